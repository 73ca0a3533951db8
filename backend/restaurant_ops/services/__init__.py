# Services module

from restaurant_ops.services.mode_config import (
    ModeKind,
    ModeState,
    PeakDemandConfig,
    SpecialHoursConfig,
    InvalidConfigError,
    ModeNotActiveError,
    ModeWriteConflictError,
)
from restaurant_ops.services.operational_mode_service import (
    OperationalModeStore,
    InMemoryModeStateStore,
    SqlModeStateStore,
)
from restaurant_ops.services.effect_resolver import EffectResolver, EffectiveModeSnapshot
from restaurant_ops.services.daily_cost_service import (
    DailyCostAnalysisEngine,
    DailyCostReport,
    CancellationToken,
    GenerationCancelledError,
    GenerationTimeoutError,
)
