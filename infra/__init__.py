"""Infrastructure modules for AutoPerp"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, CycleStats  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"CycleStats",
	"StateStore",
]
