from agora.interactions.bus import (
    Interaction,
    InteractionBus,
    InteractionResult,
    InteractionStatus,
    Target,
)

__all__ = ["Interaction", "InteractionBus", "InteractionResult", "InteractionStatus", "Target"]
