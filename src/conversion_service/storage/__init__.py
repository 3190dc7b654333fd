"""
Encrypted-at-rest file lifecycle: the codec, size-adaptive transfer, per-user
storage with retention, and the metadata records that outlive the bytes.
"""

from .codec import EncryptedFilePayload, EncryptionCodec, FileFormat
from .records import LocalFileRecords, StoredFile
from .store import SecureFileStore, StorageKind
from .transfer import AdaptiveFileTransfer
