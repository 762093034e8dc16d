"""Error taxonomy for scheduling and orchestration."""

from __future__ import annotations


class AnnouncementError(Exception):
    """Base class for announcement engine errors."""


class AnnouncementNotFound(AnnouncementError):
    pass


class InvalidSchedule(AnnouncementError):
    """Raised when a non-draft announcement lacks a future scheduled_at."""


class TenantUnavailable(AnnouncementError):
    """The platform has no tenant metadata or its datastore cannot be reached."""


class JobAssociationMissing(AnnouncementError):
    """A trigger was expected on the announcement but none is recorded."""


class JobAlreadyExists(AnnouncementError):
    """A trigger is already recorded on the announcement."""


class DispatchTransient(AnnouncementError):
    """A send failed in a way that may succeed on retry."""


class DispatchPermanent(AnnouncementError):
    """A send failed and will not succeed on retry (e.g. DMs disabled)."""


class SagaUnrecoverable(AnnouncementError):
    """A saga step failed with a non-transient error."""


class AnnouncementCancelled(SagaUnrecoverable):
    """The announcement was deleted or returned to draft after its trigger fired."""


class SafetyNoticeFailed(SagaUnrecoverable):
    """The safety notice could not be posted, so no deep link can be built."""


class SagaTransitionError(AnnouncementError):
    """A saga was asked to move to a step that does not follow its current one."""


class SagaCheckpointFailed(AnnouncementError):
    """Progress inside a step could not be persisted; the saga stays on that step."""
