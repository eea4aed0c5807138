"""External integrations: M-Pesa Daraja and SMTP."""
from .email_notifier import EmailDispatchResult, EmailNotifier
from .mpesa_client import MpesaClient, normalize_kenyan_phone_number

__all__ = [
    "EmailDispatchResult",
    "EmailNotifier",
    "MpesaClient",
    "normalize_kenyan_phone_number",
]
