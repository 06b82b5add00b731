"""
DocVault Documents.

Metadata lives in the database; bytes live in S3-compatible object storage
and move through presigned URLs.
"""

from docvault.documents.models import CreatedDocument, DocumentPage, DocumentView, ResolvedDocument
from docvault.documents.service import DocumentService
from docvault.documents.storage import S3ObjectStorage

__all__ = [
    "CreatedDocument",
    "DocumentPage",
    "DocumentView",
    "ResolvedDocument",
    "DocumentService",
    "S3ObjectStorage",
]
