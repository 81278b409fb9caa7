"""SkillForge progression engine."""
