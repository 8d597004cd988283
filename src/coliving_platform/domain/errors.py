"""Exception hierarchy for the agreement lifecycle engine.

Routes translate these into HTTP responses; the webhook processor decides
per type whether a failure is swallowed or surfaced to the provider.
"""


class AgreementEngineError(Exception):
    """Base class for every error raised by the agreement engine."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class WebhookSignatureError(AgreementEngineError):
    """Inbound webhook signature is missing or does not match."""


class AgreementNotFoundError(AgreementEngineError):
    """No agreement matches the given id or envelope id."""

    def __init__(self, agreement_id: str):
        self.agreement_id = agreement_id
        super().__init__(f"Agreement {agreement_id} not found", {"agreement_id": agreement_id})


class TemplateNotFoundError(AgreementEngineError):
    """No template matches the given id."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template {template_id} not found", {"template_id": template_id})


class InvalidTransitionError(AgreementEngineError):
    """Raised when an agreement status transition is not allowed."""

    def __init__(self, current_status, target_status, reason: str):
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid transition from {current_status.value} to {target_status.value}: {reason}",
            {"from": current_status.value, "to": target_status.value},
        )


class ConcurrentModificationError(AgreementEngineError):
    """A transition kept losing the optimistic version check."""


class TemplateValidationError(AgreementEngineError):
    """Template content or variable definitions are invalid."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors), {"errors": errors})


class AgreementDataError(AgreementEngineError):
    """Supplied variable values do not satisfy the template."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors), {"errors": errors})


class ConfigValidationError(AgreementEngineError):
    """A reminder configuration update violates a range constraint."""


class AgreementNotCompletedError(AgreementEngineError):
    """Tenant provisioning was requested for an agreement that is not completed."""


class SigningProviderError(AgreementEngineError):
    """The e-signature provider rejected or failed an envelope request."""
