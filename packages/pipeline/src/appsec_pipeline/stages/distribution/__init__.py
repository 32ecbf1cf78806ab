from .stage import distribution_actions, distribution_command, distribution_stage

__all__ = ["distribution_actions", "distribution_command", "distribution_stage"]
