from .stage import SARIF_NAME, secret_scan_stage

__all__ = ["SARIF_NAME", "secret_scan_stage"]
