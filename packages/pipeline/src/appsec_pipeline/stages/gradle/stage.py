from __future__ import annotations

from appsec_pipeline.core import REPORT_DIRS, Settings
from appsec_pipeline.pipeline.model import Archive, ParamIs, Post, Sh, Stage, Steps

# Gradle task names carry the variant: lintDebug, testReleaseUnitTest, ...
VARIANT = "${BUILD_VARIANT}"


def _gradle(settings: Settings, *tasks: str) -> str:
    return " ".join([settings.gradle_cmd, "--no-daemon", *tasks])


def _module_path(settings: Settings, rel: str) -> str:
    return f"{settings.app_module}/{rel}"


def lint_stage(settings: Settings) -> Stage:
    return Stage(
        name="Android-Lint",
        when=ParamIs(name="lint"),
        body=Steps(steps=[Sh(command=_gradle(settings, f"lint{VARIANT}"), label="gradle lint")]),
        post=Post(
            always=[
                Archive(
                    pattern="lint-results*",
                    dest=REPORT_DIRS["lint"],
                    base=_module_path(settings, "build/reports"),
                )
            ]
        ),
    )


def unit_tests_stage(settings: Settings) -> Stage:
    """Unit tests plus the JaCoCo coverage report the static analysis stage reads."""
    return Stage(
        name="Unit-Tests",
        when=ParamIs(name="tests"),
        body=Steps(
            steps=[
                Sh(command=_gradle(settings, f"test{VARIANT}UnitTest"), label="gradle unit tests"),
                Sh(command=_gradle(settings, "jacocoTestReport"), label="gradle coverage report"),
            ]
        ),
        post=Post(
            always=[
                Archive(
                    pattern="**/*.xml",
                    dest=REPORT_DIRS["tests"],
                    base=_module_path(settings, "build/test-results"),
                ),
                Archive(
                    pattern="**/*",
                    dest=REPORT_DIRS["coverage"],
                    base=_module_path(settings, "build/reports/jacoco"),
                ),
            ]
        ),
    )


def build_stage(settings: Settings) -> Stage:
    return Stage(
        name="Build",
        when=ParamIs(name="build"),
        body=Steps(
            steps=[
                Sh(
                    command=_gradle(settings, "--version"),
                    label="gradle toolchain versions",
                    best_effort=True,
                ),
                Sh(
                    command=_gradle(settings, "clean", f"assemble{VARIANT}"),
                    label="gradle assemble",
                ),
            ]
        ),
        post=Post(
            success=[
                Archive(
                    pattern="**/*.apk",
                    dest=REPORT_DIRS["apk"],
                    base=_module_path(settings, "build/outputs/apk"),
                    allow_empty=False,
                )
            ]
        ),
    )
