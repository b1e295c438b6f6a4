class PlannerError(Exception):
    """Base for errors surfaced to the caller as {"ok": false, "error": message}."""
    status_code = 400
    message = "Something went wrong."

    def __init__(self, message=None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class Unauthenticated(PlannerError):
    status_code = 401
    message = "Unauthorized"


class AccessDenied(PlannerError):
    # non-members see the same thing as a missing project
    status_code = 404
    message = "Not found"


class PermissionDenied(PlannerError):
    status_code = 403
    message = "Permission denied"


class ValidationFailure(PlannerError):
    status_code = 400
    message = "Invalid request."


class CollaboratorConflict(ValidationFailure):
    pass


class DestructiveChange(PlannerError):
    status_code = 409
    message = "This would delete every phase. Resubmit with confirm_clear to clear the roadmap."


class StaleRoadmap(PlannerError):
    status_code = 409
    message = "The roadmap was changed by someone else. Reload and try again."


class SaveFailed(PlannerError):
    status_code = 500
    message = "Failed to save structure."


class IntegrationError(PlannerError):
    status_code = 502
    message = "External service unavailable."
