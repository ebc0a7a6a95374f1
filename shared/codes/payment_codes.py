"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004

    # Transaction state errors (7xxxx)
    TRANSACTION_CONFLICT = 70001
    STORE_UNAVAILABLE = 70002


# Provider→internal status mapping. The gateway adapter logs statuses missing
# here and reports them as pending.
PROVIDER_STATUS_TO_INTERNAL = {
    "mercadopago": {
        "pending": "pending",
        "authorized": "pending",
        "in_process": "pending",
        "in_mediation": "pending",
        "approved": "approved",
        "rejected": "rejected",
        "cancelled": "cancelled",
        "refunded": "refunded",
        "charged_back": "refunded",
    },
}
