"""Generation counter for dropping stale async results.

A long-running hand-off (a logbook regeneration, say) takes a token before
it starts and checks it before touching shared state. Advancing the counter
invalidates every token issued so far.

    token = counter.issue()
    result = await slow_call()
    if token.valid:
        apply(result)
"""

from __future__ import annotations


class GenerationCounter:
    def __init__(self) -> None:
        self.value = 0

    def issue(self) -> CancellationToken:
        return CancellationToken(self, self.value)

    def advance(self) -> int:
        self.value += 1
        return self.value


class CancellationToken:
    __slots__ = ("_counter", "generation")

    def __init__(self, counter: GenerationCounter, generation: int) -> None:
        self._counter = counter
        self.generation = generation

    @property
    def valid(self) -> bool:
        return self._counter.value == self.generation
