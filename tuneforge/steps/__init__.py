from .step_10_preflight import PreflightStep
from .step_20_system_files import SystemFilesStep
from .step_30_boot_rebuild import BootRebuildStep
from .step_40_activate import ActivateStep
from .step_50_user_files import UserFilesStep
from .undo_10_disable_services import DisableServicesStep
from .undo_20_remove_files import RemoveFilesStep

__all__ = [
    "PreflightStep",
    "SystemFilesStep",
    "BootRebuildStep",
    "ActivateStep",
    "UserFilesStep",
    "DisableServicesStep",
    "RemoveFilesStep",
]
