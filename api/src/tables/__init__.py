from .base import Base
from .enrollment import Enrollment
from .payment import Payment
from .payment_transition import PaymentTransition
from .payment_event_request import PaymentEventRequest
from .payment_conflict import PaymentConflict
from .activation_notification import ActivationNotification
