from .client import MobSFClient, make_mobsf_client
from .stage import find_apk, mobsf_actions, mobsf_stage

__all__ = ["MobSFClient", "make_mobsf_client", "find_apk", "mobsf_actions", "mobsf_stage"]
