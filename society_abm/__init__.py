"""Public API for the Society ABM package.

Agent-based simulation of a trust society: strategy-driven agents play an
iterated prisoner's dilemma, update directional trust, form coalitions,
die when their ATP runs out and may be reborn on the strength of their
reputation.
"""

__version__ = "1.0.0"

from .cli import run_cli, run_replicates, run_society_simulation
from .config import (
    ConfigurationError,
    ScenarioPreset,
    SocietyConfig,
    apply_preset,
    get_preset,
    list_presets,
    load_preset,
)
from .models import (
    Action,
    AgentSnapshot,
    Coalition,
    DeathCause,
    DeathRecord,
    DecisionContext,
    EpochSnapshot,
    EventType,
    Interaction,
    Outcome,
    RunStatus,
    Significance,
    SocietyEvent,
    SocietyFrame,
    SocietyMetrics,
    SocietyResult,
    Strategy,
    TrustEdge,
)
from .metrics import EventDetector, compute_metrics
from .population import PopulationDynamics, detect_coalitions
from .rounds import RoundExecutor
from .simulation import SimulationInvariantError, SimulationStateError, SocietyEngine
from .strategies import decide, expected_cooperation
from .trust import TrustRules, update_trust
from .utils import gini_coefficient, normalize_strategy_label

__all__ = [
    "__version__",
    "run_cli",
    "run_replicates",
    "run_society_simulation",
    "ConfigurationError",
    "ScenarioPreset",
    "SocietyConfig",
    "apply_preset",
    "get_preset",
    "list_presets",
    "load_preset",
    "Action",
    "AgentSnapshot",
    "Coalition",
    "DeathCause",
    "DeathRecord",
    "DecisionContext",
    "EpochSnapshot",
    "EventType",
    "Interaction",
    "Outcome",
    "RunStatus",
    "Significance",
    "SocietyEvent",
    "SocietyFrame",
    "SocietyMetrics",
    "SocietyResult",
    "Strategy",
    "TrustEdge",
    "EventDetector",
    "compute_metrics",
    "PopulationDynamics",
    "detect_coalitions",
    "RoundExecutor",
    "SimulationInvariantError",
    "SimulationStateError",
    "SocietyEngine",
    "decide",
    "expected_cooperation",
    "TrustRules",
    "update_trust",
    "gini_coefficient",
    "normalize_strategy_label",
]
