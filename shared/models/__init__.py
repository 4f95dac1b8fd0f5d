"""SQLAlchemy models."""

from shared.models.base import Base
from shared.models.error_log import ErrorLog
from shared.models.pulse_cohort import PulseCohort
from shared.models.pulse_invite import PulseInvite
from shared.models.pulse_question import PulseQuestion
from shared.models.pulse_schedule import PulseSchedule
from shared.models.tenant import Tenant
from shared.models.user import User

__all__ = [
    "Base",
    "ErrorLog",
    "PulseCohort",
    "PulseInvite",
    "PulseQuestion",
    "PulseSchedule",
    "Tenant",
    "User",
]
