from app.services.sync.folder_sync import run_folder_sync
from app.services.sync.full_sync import run_full_sync
from app.services.sync.incremental_sync import run_incremental_sync

__all__ = ["run_folder_sync", "run_full_sync", "run_incremental_sync"]
