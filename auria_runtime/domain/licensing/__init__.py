"""
Licensing domain: license issuing and validation, usage metering, receipts.
"""

from .meter import Charge, TokenBucket, UsageMeter
from .signing import LicenseAuthority, public_key_of, sign, verify
from .validator import LicenseValidator

__all__ = [
    "Charge",
    "LicenseAuthority",
    "LicenseValidator",
    "TokenBucket",
    "UsageMeter",
    "public_key_of",
    "sign",
    "verify",
]
