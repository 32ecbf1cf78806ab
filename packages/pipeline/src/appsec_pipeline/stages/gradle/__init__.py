from .stage import build_stage, lint_stage, unit_tests_stage

__all__ = ["build_stage", "lint_stage", "unit_tests_stage"]
