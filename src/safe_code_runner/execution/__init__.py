from .capabilities import PROCESS, THREAD, EngineCapabilities
from .engine import CancellationToken, LanguageEngine
from .types import EngineOutcome, EngineRunConfig

__all__ = [
    "PROCESS",
    "THREAD",
    "EngineCapabilities",
    "CancellationToken",
    "LanguageEngine",
    "EngineOutcome",
    "EngineRunConfig",
]
