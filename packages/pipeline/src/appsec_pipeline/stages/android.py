"""
The Android security pipeline:

  Quality-Checks (parallel, fail-fast)
    Dependency-Check | Secret-Scan | Android-Lint | Unit-Tests
  Static-Analysis
  Build
  MobSF-Scan
  Distribution-Deploy

Every stage is gated by a boolean parameter; all of them default to off.
"""

from __future__ import annotations

from typing import Any, Mapping

import httpx

from appsec_pipeline.core import REPORT_DIRS, Settings
from appsec_pipeline.pipeline.actions import ActionRegistry
from appsec_pipeline.pipeline.config import PipelineConfig, build_config, resolve_params
from appsec_pipeline.pipeline.model import (
    Archive,
    BooleanParameter,
    Parallel,
    PipelineDefinition,
    Post,
    Stage,
)

from .dependency_check import dependency_check_stage
from .distribution import distribution_actions, distribution_stage
from .gitleaks import secret_scan_stage
from .gradle import build_stage, lint_stage, unit_tests_stage
from .mobsf import mobsf_actions, mobsf_stage
from .sonar import sonar_actions, static_analysis_stage

PIPELINE_NAME = "android-appsec"

PARAMETERS: dict[str, str] = {
    "release": "Build the release variant instead of debug",
    "dependency_check": "Scan dependencies for known vulnerabilities",
    "secret_scan": "Scan the repository for committed secrets",
    "static_analysis": "Run sonar-scanner and wait for the quality gate",
    "lint": "Run Android lint",
    "tests": "Run unit tests and the coverage report",
    "build": "Assemble the APK",
    "distribution": "Upload the APK to Firebase App Distribution",
    "mobsf_scan": "Upload the APK to MobSF for dynamic/static analysis",
}


def build_android_pipeline(settings: Settings) -> PipelineDefinition:
    return PipelineDefinition(
        name=PIPELINE_NAME,
        description="Android build with dependency, secret, static and mobile security checks",
        parameters={
            name: BooleanParameter(default=False, description=desc)
            for name, desc in PARAMETERS.items()
        },
        stages=[
            Stage(
                name="Quality-Checks",
                body=Parallel(
                    stages=[
                        dependency_check_stage(settings),
                        secret_scan_stage(settings),
                        lint_stage(settings),
                        unit_tests_stage(settings),
                    ],
                    fail_fast=True,
                ),
            ),
            static_analysis_stage(settings),
            build_stage(settings),
            mobsf_stage(settings),
            distribution_stage(settings),
        ],
        post=Post(
            always=[Archive(pattern="*.log", dest=REPORT_DIRS["logs"], base="$LOG_DIR")]
        ),
    )


def default_actions(
    settings: Settings, *, transport: httpx.BaseTransport | None = None
) -> ActionRegistry:
    return (
        sonar_actions(settings, transport=transport)
        .merged(mobsf_actions(settings, transport=transport))
        .merged(distribution_actions(settings))
    )


def android_environment(params: Mapping[str, Any]) -> dict[str, str]:
    return {"BUILD_VARIANT": "Release" if params.get("release") else "Debug"}


def android_config(
    definition: PipelineDefinition,
    settings: Settings,
    *,
    params: Mapping[str, Any] | None = None,
    build_id: str | None = None,
) -> PipelineConfig:
    resolved = resolve_params(definition, params)
    return build_config(
        definition,
        settings,
        params=resolved,
        env=android_environment(resolved),
        build_id=build_id,
    )
