"""Script Agent - multi-turn model chat that runs embedded scripts."""

__version__ = "0.1.0"

from script_agent.config import Config
from script_agent.orchestrator import Orchestrator
from script_agent.types import ProcessResult
from script_agent.worker import AgentWorker

__all__ = ["AgentWorker", "Config", "Orchestrator", "ProcessResult", "__version__"]
