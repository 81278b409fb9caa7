"""Level curves and level computation.

Both curves are exponential: reaching level L (L > 1) costs
floor(base * growth ** (L - 1)) XP on top of level L - 1.

These values MUST stay in sync with the web client and the leaderboard,
which derive levels from the same totals.
"""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class LevelCurve:
    """An exponential XP curve with an optional level cap."""

    base: int
    growth: float
    max_level: int | None = None

    def capped(self, max_level: int) -> LevelCurve:
        """Return the same curve with a different cap (skills carry their own max_level)."""
        return LevelCurve(self.base, self.growth, max_level)

    def xp_for_level(self, level: int) -> int:
        """XP needed to go from level - 1 to level."""
        if level <= 1:
            return 0
        return math.floor(self.base * math.pow(self.growth, level - 1))

    def cumulative_xp_for_level(self, level: int) -> int:
        """Total XP needed to reach level starting from level 1 with 0 XP."""
        return sum(self.xp_for_level(lvl) for lvl in range(2, level + 1))

    def level_from_total_xp(self, total_xp: int) -> int:
        """Greedy walk from level 1; never advances past max_level."""
        level = 1
        xp_sum = 0
        while self.max_level is None or level < self.max_level:
            step = self.xp_for_level(level + 1)
            if xp_sum + step > total_xp:
                break
            xp_sum += step
            level += 1
        return level

    def xp_to_next_level(self, total_xp: int) -> int:
        """Remaining XP until the next level; 0 once the cap is reached."""
        level = self.level_from_total_xp(total_xp)
        if self.max_level is not None and level >= self.max_level:
            return 0
        return self.xp_for_level(level + 1) - (total_xp - self.cumulative_xp_for_level(level))

    def level_progress(self, total_xp: int) -> dict:
        """Level info for progress bars."""
        level = self.level_from_total_xp(total_xp)
        is_max = self.max_level is not None and level >= self.max_level
        xp_into_level = total_xp - self.cumulative_xp_for_level(level)
        return {
            "level": level,
            "xp_into_level": xp_into_level,
            "xp_for_level": 0 if is_max else self.xp_for_level(level + 1),
            "xp_to_next_level": self.xp_to_next_level(total_xp),
            "next_level": level if is_max else level + 1,
            "is_max_level": is_max,
        }


USER_CURVE = LevelCurve(base=100, growth=1.5)
SKILL_CURVE = LevelCurve(base=50, growth=1.3, max_level=10)


def calculate_user_level(total_xp: int) -> int:
    """User level from lifetime XP."""
    return USER_CURVE.level_from_total_xp(total_xp)


def xp_to_next_user_level(total_xp: int) -> int:
    """Remaining XP until the user's next level."""
    return USER_CURVE.xp_to_next_level(total_xp)


def calculate_skill_level(current_xp: int, max_level: int) -> int:
    """Skill level from the skill's XP, capped at the skill's max_level."""
    return SKILL_CURVE.capped(max_level).level_from_total_xp(current_xp)


def xp_to_next_skill_level(current_xp: int, max_level: int) -> int:
    """Remaining XP until the skill's next level; 0 at max_level."""
    return SKILL_CURVE.capped(max_level).xp_to_next_level(current_xp)
