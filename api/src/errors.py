class EnrollmentServiceError(Exception):
    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)

    @property
    def message(self) -> str:
        return str(self.args[0])


# Client errors, surfaced to the caller and never retried automatically

class ClientError(EnrollmentServiceError):
    ...


class DuplicateEnrollment(ClientError):
    """User already has an active or completed enrollment in this course"""


class InvalidTransition(ClientError):
    """Transition is not allowed from the current status"""


class PaymentInProgress(ClientError):
    """Current payment attempt is still awaiting confirmation"""


class NotOwner(ClientError):
    """Access denied"""


class EnrollmentNotFound(ClientError):
    """Enrollment not found"""


class PaymentNotFound(ClientError):
    """Payment not found"""


class CourseNotFound(ClientError):
    """Course not found"""


# Gateway errors

class GatewayError(EnrollmentServiceError):
    ...


class GatewayUnavailable(GatewayError):
    """Payment gateway is unavailable, try again later"""


class GatewayRejected(GatewayError):
    """Payment gateway rejected the request"""


# Security errors, rejected outright and never partially processed

class SecurityError(EnrollmentServiceError):
    ...


class MalformedCallback(SecurityError):
    """Gateway callback failed validation"""


# Consistency errors, held for operator review

class ConsistencyError(EnrollmentServiceError):
    ...


class ConflictingPaymentEvent(ConsistencyError):
    """Payment event contradicts the stored terminal outcome"""
