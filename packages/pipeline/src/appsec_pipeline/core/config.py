from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

LogFormat = Literal["json", "console"]

# Report sub-directories, one per tool, under reports/<build_id>/
REPORT_DIRS = {
    "dependency_check": "dependency-check",
    "gitleaks": "gitleaks",
    "lint": "android-lint",
    "tests": "tests",
    "coverage": "coverage",
    "mobsf": "mobsf",
    "apk": "apk",
    "logs": "logs",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="APPSEC_PIPELINE_",
        env_file=".env",
        extra="ignore",
    )

    workspace: Path = Field(default=Path("."))
    run_root: Path = Field(default=Path("_runs"))
    report_root: Path = Field(default=Path("reports"))

    log_level: str = Field(default="INFO")
    log_format: LogFormat = Field(default="console")
    ansi_color: bool = Field(default=True)

    timeout_minutes: float = Field(default=60.0, gt=0)
    keep_runs: int = Field(default=10, ge=1)

    # build toolchain
    gradle_cmd: str = Field(default="./gradlew")
    app_module: str = Field(default="app")

    # containerized scanners
    docker_cmd: str = Field(default="docker")
    dependency_check_image: str = Field(default="owasp/dependency-check:latest")
    gitleaks_image: str = Field(default="zricethezav/gitleaks:latest")
    gitleaks_best_effort: bool = Field(default=True)

    # static analysis
    sonar_scanner_cmd: str = Field(default="sonar-scanner")
    sonar_host_url: str = Field(default="http://localhost:9000")
    sonar_project_key: str = Field(default="android-app")
    sonar_token: Optional[SecretStr] = None
    quality_gate_timeout_s: float = Field(default=300.0, gt=0)
    quality_gate_interval_s: float = Field(default=5.0, gt=0)

    # mobile security analysis
    mobsf_url: str = Field(default="http://localhost:8000")
    mobsf_api_key: Optional[SecretStr] = None
    mobsf_scan_type: str = Field(default="apk")

    # app distribution
    firebase_cmd: str = Field(default="firebase")
    firebase_app_id: Optional[str] = None
    firebase_token: Optional[SecretStr] = None
    tester_groups: str = Field(default="qa")

    def secret_env(self) -> dict[str, str]:
        """Secrets as the environment variables the tools expect."""
        out: dict[str, str] = {}
        if self.sonar_token is not None:
            out["SONAR_TOKEN"] = self.sonar_token.get_secret_value()
        if self.mobsf_api_key is not None:
            out["MOBSF_API_KEY"] = self.mobsf_api_key.get_secret_value()
        if self.firebase_token is not None:
            out["FIREBASE_TOKEN"] = self.firebase_token.get_secret_value()
        return out


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    return Settings()
