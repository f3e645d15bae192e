from .base import Base

# import models so Alembic/autoloaders can discover mappers
from .campaign import Campaign  # noqa: F401
from .prize import (  # noqa: F401
    Prize,
    ECouponPrize,
    UrlPrize,
    MailDeliveryPrize,
    PrizeUrl,
    PRIZE_TYPES,
)
from .participation import (  # noqa: F401
    LOSS_PRIZE_KEY,
    ParticipationRecord,
    ChanceOverride,
)
from .grants import (  # noqa: F401
    ClaimedGrant,
    ParticipationTicket,
    EventToken,
    ParticipationRequest,
)

__all__ = [
    "Base",
    "Campaign",
    "Prize",
    "ECouponPrize",
    "UrlPrize",
    "MailDeliveryPrize",
    "PrizeUrl",
    "PRIZE_TYPES",
    "LOSS_PRIZE_KEY",
    "ParticipationRecord",
    "ChanceOverride",
    "ClaimedGrant",
    "ParticipationTicket",
    "EventToken",
    "ParticipationRequest",
]
