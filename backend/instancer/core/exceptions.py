"""
Instancer - Instance lifecycle error taxonomy

User-correctable outcomes are non-retryable and map to 4xx responses.
Infrastructure failures are retryable and map to 5xx responses.
"""

from typing import Any, Dict, Optional


class InstanceError(Exception):
    """Base class for every lifecycle outcome surfaced to callers."""

    code = "INSTANCE_ERROR"
    http_status = 400
    retryable = False

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **self.details,
        }


# ============================================================================
# User-correctable outcomes
# ============================================================================

class NoTeam(InstanceError):
    code = "NO_TEAM"
    http_status = 400

    def __init__(self):
        super().__init__("You must join a team before deploying an instance")


class AlreadyExists(InstanceError):
    code = "INSTANCE_EXISTS"
    http_status = 409

    def __init__(self, instance_id: Optional[int] = None):
        super().__init__(
            "You already have a running instance for this challenge",
            instance_id=instance_id,
        )


class OwnedByTeammate(InstanceError):
    code = "INSTANCE_BY_TEAMMATE"
    http_status = 409

    def __init__(self, creator_name: str):
        super().__init__(
            f"Teammate [{creator_name}] already started this challenge's instance",
            creator_name=creator_name,
        )
        self.creator_name = creator_name


class ConfirmationRequired(InstanceError):
    code = "NEED_DESTROY_OWN"
    http_status = 409

    def __init__(self, challenge_name: str, challenge_id: int):
        super().__init__(
            f"You already run an instance of [{challenge_name}]; "
            "destroy it before starting a new one",
            old_challenge_id=challenge_id,
            old_challenge_name=challenge_name,
        )
        self.challenge_name = challenge_name
        self.challenge_id = challenge_id


class LimitReached(InstanceError):
    code = "LIMIT_REACHED"
    http_status = 409

    def __init__(self, limit: int, message: str = ""):
        super().__init__(
            message
            or f"Team instance limit reached ({limit}) and all are owned by teammates",
            limit=limit,
        )
        self.limit = limit


class ManualCreateForbidden(InstanceError):
    code = "MANUAL_DEPLOY_FORBIDDEN"
    http_status = 403

    def __init__(self, mode: str):
        super().__init__(
            f"Instances are provisioned by the platform in {mode} contests",
            mode=mode,
        )


class ContestNotFound(InstanceError):
    code = "CONTEST_NOT_FOUND"
    http_status = 404

    def __init__(self, contest_id: int):
        super().__init__("Contest not found", contest_id=contest_id)


class ChallengeNotFound(InstanceError):
    code = "CHALLENGE_NOT_FOUND"
    http_status = 404

    def __init__(self, challenge_id: int):
        super().__init__("Challenge not found", challenge_id=challenge_id)


class RuntimeSpecMissing(InstanceError):
    code = "NO_DOCKER_IMAGE"
    http_status = 400

    def __init__(self, challenge_id: int):
        super().__init__(
            "No container image is configured for this challenge",
            challenge_id=challenge_id,
        )


class NoInstance(InstanceError):
    code = "NO_INSTANCE"
    http_status = 404

    def __init__(self):
        super().__init__("The team has no running instance")


class NotOwner(InstanceError):
    code = "NOT_OWNER"
    http_status = 403

    def __init__(self, creator_name: str):
        super().__init__(
            f"This instance was created by teammate [{creator_name}]",
            creator_name=creator_name,
        )


class NotInRenewalWindow(InstanceError):
    code = "NOT_IN_WINDOW"
    http_status = 400

    def __init__(self, remaining_minutes: int, window_minutes: int):
        super().__init__(
            f"Renewal is allowed in the last {window_minutes} minutes; "
            f"{remaining_minutes} minutes remaining",
            remaining_minutes=remaining_minutes,
            window_minutes=window_minutes,
        )
        self.remaining_minutes = remaining_minutes


# ============================================================================
# Infrastructure failures
# ============================================================================

class PortAllocationFailed(InstanceError):
    code = "PORT_ALLOCATION_FAILED"
    http_status = 503
    retryable = True

    def __init__(self, reason: str):
        super().__init__(f"Port allocation failed: {reason}")


class RuntimeStartFailed(InstanceError):
    code = "CONTAINER_CREATE_FAILED"
    http_status = 500
    retryable = True

    def __init__(self, diagnostics: str = ""):
        super().__init__("Failed to start the instance", diagnostics=diagnostics)
        self.diagnostics = diagnostics


class PersistenceFailed(InstanceError):
    code = "DB_ERROR"
    http_status = 500
    retryable = True

    def __init__(self, reason: str = ""):
        super().__init__("Failed to save the instance", reason=reason)
