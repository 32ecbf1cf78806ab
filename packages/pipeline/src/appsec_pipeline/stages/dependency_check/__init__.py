from .stage import dependency_check_stage

__all__ = ["dependency_check_stage"]
