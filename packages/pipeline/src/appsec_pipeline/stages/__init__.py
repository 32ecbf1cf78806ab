from .android import (
    PARAMETERS,
    PIPELINE_NAME,
    android_config,
    android_environment,
    build_android_pipeline,
    default_actions,
)

__all__ = [
    "PARAMETERS",
    "PIPELINE_NAME",
    "android_config",
    "android_environment",
    "build_android_pipeline",
    "default_actions",
]
