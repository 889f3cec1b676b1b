"""Application services.

The record codec and the record access service compose the domain services
with the encryption and audit infrastructure.
"""

from medvault.services.record_access_service import RecordAccessService, RecordPage
from medvault.services.record_codec import RecordCodec

__all__ = ['RecordAccessService', 'RecordPage', 'RecordCodec']
