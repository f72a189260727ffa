"""Local dice command: `roll 2d6+3` / `r 1d20 - 1`.

Dice are rolled here and never by the narrator, so results cannot be
invented. The command is recognised at the start of the input only.
"""

from __future__ import annotations

import random
import re
from dataclasses import dataclass, field

MAX_DICE = 100
MAX_SIDES = 1000
INVALID_ROLL = "Invalid dice roll parameters."
# Longer numbers are out of range anyway and may not even convert to int.
_MAX_DIGITS = 6

_ROLL_RE = re.compile(
    r"^\s*(?:roll|r)\s+(\d+)d(\d+)(?:\s*([+-])\s*(\d+))?\b",
    re.IGNORECASE,
)


@dataclass
class DiceRoll:
    count: int
    sides: int
    modifier: int = 0
    rolls: list[int] = field(default_factory=list)
    valid: bool = True

    @property
    def total(self) -> int:
        return sum(self.rolls) + self.modifier

    def describe(self) -> str:
        if not self.valid:
            return INVALID_ROLL
        mod = ""
        if self.modifier:
            mod = f" {'+' if self.modifier > 0 else '-'} {abs(self.modifier)}"
        rolls = ", ".join(str(r) for r in self.rolls)
        return f"Rolling {self.count}d{self.sides}{mod}: [{rolls}]{mod} = {self.total}"


def is_roll_command(text: str) -> bool:
    return _ROLL_RE.match(text) is not None


def roll_dice(command: str, rng: random.Random | None = None) -> DiceRoll:
    """Roll the dice a command asks for.

    Raises ValueError when the text is not a roll command at all; an
    out-of-range count or side number gives an invalid DiceRoll instead.
    """
    match = _ROLL_RE.match(command)
    if not match:
        raise ValueError(f"Not a dice command: {command!r}")
    if any(len(group) > _MAX_DIGITS for group in match.group(1, 2, 4) if group):
        return DiceRoll(count=0, sides=0, valid=False)
    count, sides = int(match.group(1)), int(match.group(2))
    modifier = int(match.group(4) or 0)
    if match.group(3) == "-":
        modifier = -modifier
    if not (0 < count <= MAX_DICE and 0 < sides <= MAX_SIDES):
        return DiceRoll(count=count, sides=sides, modifier=modifier, valid=False)
    rng = rng or random
    rolls = [rng.randint(1, sides) for _ in range(count)]
    return DiceRoll(count=count, sides=sides, modifier=modifier, rolls=rolls)
