"""cicada - Directory mirroring and archiving to local or S3 storage."""

__version__ = "0.3.0"
