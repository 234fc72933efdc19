"""REST/JSON server dialect."""

from collect_pipeline.central.models import (
    CentralAttachment,
    CentralForm,
    CentralSubmission,
    SessionToken,
)
from collect_pipeline.central.pull import PullFromCentral
from collect_pipeline.central.server import CentralServer

__all__ = [
    "CentralAttachment",
    "CentralForm",
    "CentralServer",
    "CentralSubmission",
    "PullFromCentral",
    "SessionToken",
]
