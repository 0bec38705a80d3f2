"""Project-wide named constants."""

# Object stores reject multipart parts smaller than 5 MiB except the last one.
DEFAULT_CHUNK_BYTES: int = 5 * 1024 * 1024

# Default on-disk location of the resume state database.
DEFAULT_STATE_DB: str = "data/upload_state.db"

# Prefix for environment variable overrides of UploadConfig fields.
ENV_PREFIX: str = "MPUPLOAD_"
