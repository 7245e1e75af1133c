# history.py
# Execution history: one append-only list of attempts per position.
#
# Position 0 is the seed built from the flow's initial input; positions
# 1..N belong to the declared steps in order. Within a position the
# attempt at index i always has round == i.

from typing import Iterator

from toolflow.models import Attempt, ToolOutput


class HistoryView:
    """
    Read-only access to a run's attempts.

    Input builders and context selection receive this view. It reflects
    positions appended later but has no way to add them.
    """

    def __init__(self, positions: list[list[Attempt]]) -> None:
        self._positions = positions

    def __len__(self) -> int:
        return len(self._positions)

    def __iter__(self) -> Iterator[list[Attempt]]:
        return (list(attempts) for attempts in self._positions)

    def attempts(self, position: int) -> list[Attempt]:
        """All attempts recorded at `position`, in round order."""
        return list(self._positions[position])

    def final(self, position: int) -> Attempt | None:
        """The last attempt at `position`, or None if it never ran."""
        attempts = self._positions[position]
        return attempts[-1] if attempts else None

    @property
    def seed(self) -> Attempt:
        return self._positions[0][-1]

    @property
    def finals(self) -> list[Attempt]:
        """Final attempt of every position that ran."""
        return [attempts[-1] for attempts in self._positions if attempts]

    @property
    def latest(self) -> Attempt:
        """Final attempt of the most recent position that ran."""
        for attempts in reversed(self._positions):
            if attempts:
                return attempts[-1]
        raise IndexError("History is empty.")

    def finals_of_type(self, output_type: type[ToolOutput]) -> list[Attempt]:
        return [attempt for attempt in self.finals if attempt.has_output_type(output_type)]

    def final_by_tool(self, tool_name: str) -> Attempt | None:
        """Final attempt of the last position run by `tool_name`."""
        for attempt in reversed(self.finals):
            if attempt.tool_name == tool_name:
                return attempt
        return None

    def as_lists(self) -> list[list[Attempt]]:
        return [list(attempts) for attempts in self._positions]


class ExecutionHistory(HistoryView):
    """
    Position-indexed, round-indexed record of every attempt in one run.

    Only the orchestrator holds this object and appends to it; everyone
    else gets view().
    """

    def __init__(self) -> None:
        super().__init__([])

    def append_position(self, attempts: list[Attempt]) -> int:
        """Append a completed position. Returns its index."""
        for expected_round, attempt in enumerate(attempts):
            if attempt.round != expected_round:
                raise ValueError(
                    f"Attempt at index {expected_round} of position {len(self._positions)} "
                    f"has round {attempt.round}."
                )
        self._positions.append(list(attempts))
        return len(self._positions) - 1

    def view(self) -> HistoryView:
        return HistoryView(self._positions)
