"""Aggregate model imports for Alembic auto-detection."""

from app.models.anonymous_usage import AnonymousUsage  # noqa: F401
from app.models.data_backup import DataBackup  # noqa: F401
from app.models.migration_lock import MigrationLock  # noqa: F401
from app.models.wizard_progress import WizardProgress  # noqa: F401
