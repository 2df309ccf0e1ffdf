"""Models package."""

from .user import User
from .credit_transaction import CreditTransaction
from .payment_event import PaymentEvent
from .video_project import VideoProject
