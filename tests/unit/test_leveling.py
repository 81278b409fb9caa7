"""Level curve tests: exact thresholds and monotonicity."""

from skillforge.progression.leveling import (
    SKILL_CURVE,
    USER_CURVE,
    LevelCurve,
    calculate_skill_level,
    calculate_user_level,
    xp_to_next_skill_level,
    xp_to_next_user_level,
)


class TestXpForLevel:
    """Per-level XP costs must match the published curves exactly."""

    def test_level_one_is_free(self):
        assert USER_CURVE.xp_for_level(1) == 0
        assert USER_CURVE.xp_for_level(0) == 0
        assert SKILL_CURVE.xp_for_level(1) == 0

    def test_user_curve_values(self):
        assert USER_CURVE.xp_for_level(2) == 150
        assert USER_CURVE.xp_for_level(3) == 225
        assert USER_CURVE.xp_for_level(4) == 337
        assert USER_CURVE.xp_for_level(5) == 506

    def test_skill_curve_values(self):
        assert SKILL_CURVE.xp_for_level(2) == 65
        assert SKILL_CURVE.xp_for_level(3) == 84
        assert SKILL_CURVE.xp_for_level(4) == 109
        assert SKILL_CURVE.xp_for_level(5) == 142

    def test_cumulative(self):
        assert USER_CURVE.cumulative_xp_for_level(1) == 0
        assert USER_CURVE.cumulative_xp_for_level(3) == 375
        assert SKILL_CURVE.cumulative_xp_for_level(3) == 149


class TestUserLevel:
    """User level boundaries."""

    def test_zero_xp_is_level_one(self):
        assert calculate_user_level(0) == 1

    def test_one_below_threshold(self):
        assert calculate_user_level(149) == 1

    def test_exact_threshold(self):
        assert calculate_user_level(150) == 2
        assert calculate_user_level(375) == 3
        assert calculate_user_level(712) == 4

    def test_xp_to_next(self):
        assert xp_to_next_user_level(0) == 150
        assert xp_to_next_user_level(100) == 50
        assert xp_to_next_user_level(150) == 225
        assert xp_to_next_user_level(200) == 175

    def test_threshold_property(self):
        """Reaching cumulative(L) lands on L, one XP less stays at L - 1."""
        for level in range(2, 40):
            threshold = USER_CURVE.cumulative_xp_for_level(level)
            assert calculate_user_level(threshold) == level
            assert calculate_user_level(threshold - 1) == level - 1

    def test_monotonic(self):
        previous = 1
        for total in range(0, 20_000, 37):
            level = calculate_user_level(total)
            assert level >= previous
            previous = level


class TestSkillLevel:
    """Skill levels respect the per-skill cap."""

    def test_basic_levels(self):
        assert calculate_skill_level(0, 10) == 1
        assert calculate_skill_level(64, 10) == 1
        assert calculate_skill_level(65, 10) == 2
        assert calculate_skill_level(100, 10) == 2
        assert calculate_skill_level(149, 10) == 3

    def test_xp_to_next(self):
        assert xp_to_next_skill_level(0, 10) == 65
        assert xp_to_next_skill_level(50, 10) == 15
        assert xp_to_next_skill_level(100, 10) == 49

    def test_never_exceeds_max_level(self):
        assert calculate_skill_level(1_000_000, 10) == 10
        assert calculate_skill_level(1_000_000, 3) == 3

    def test_xp_to_next_is_zero_at_cap(self):
        assert xp_to_next_skill_level(1_000_000, 10) == 0
        assert xp_to_next_skill_level(65, 2) == 0

    def test_max_level_one(self):
        assert calculate_skill_level(500, 1) == 1
        assert xp_to_next_skill_level(500, 1) == 0


class TestLevelProgress:
    """Progress bar helper."""

    def test_mid_level(self):
        progress = USER_CURVE.level_progress(200)
        assert progress == {
            "level": 2,
            "xp_into_level": 50,
            "xp_for_level": 225,
            "xp_to_next_level": 175,
            "next_level": 3,
            "is_max_level": False,
        }

    def test_capped_curve(self):
        curve = LevelCurve(base=10, growth=2.0, max_level=2)
        progress = curve.level_progress(500)
        assert progress["level"] == 2
        assert progress["is_max_level"] is True
        assert progress["xp_to_next_level"] == 0
        assert progress["next_level"] == 2
