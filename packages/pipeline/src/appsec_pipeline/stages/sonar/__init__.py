from .client import ReportTask, SonarClient, read_report_task
from .stage import sonar_actions, sonar_scanner_command, static_analysis_stage

__all__ = [
    "ReportTask",
    "SonarClient",
    "read_report_task",
    "sonar_actions",
    "sonar_scanner_command",
    "static_analysis_stage",
]
