"""devflow: durable AI-assisted issue pipelines driven by tracker statuses."""

from .config import DevflowConfig, load_config
from .contracts import Phase, PipelineOutcome, RouteOutcome
from .persistence import get_repository
from .transports import get_transport
from .status_table import StatusTable

__version__ = "0.1.0"
__all__ = [
    "DevflowConfig",
    "Phase",
    "PipelineOutcome",
    "RouteOutcome",
    "StatusTable",
    "get_repository",
    "get_transport",
    "load_config",
]
