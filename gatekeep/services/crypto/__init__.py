from gatekeep.services.crypto.envelope import Envelope, open_envelope, seal
from gatekeep.services.crypto.keys import KeyRing
from gatekeep.services.crypto.service import EncryptionService

__all__ = [
    "EncryptionService",
    "Envelope",
    "KeyRing",
    "open_envelope",
    "seal",
]
