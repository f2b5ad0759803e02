"""
vpsops — Remote Operations Orchestrator for a fleet of cloud servers

Provides:
- SSH Execution Channel (SSHChannel) — supervised ssh/scp subprocesses
- Health Probe (HealthProbe) — platform reachability and cloud status
- Backup/Restore Engine (BackupEngine) — manifest-backed server backups
- Fleet Maintenance Engine (MaintenanceEngine) — update/reboot sequence
- Provisioning Workflow (ProvisioningWorkflow) — create and register servers
- Server Store (ServerStore) — local JSON registry of servers
- Server Manager (ServerManager) — register, forget and destroy servers
"""

from .backup import BackupEngine, BackupResult, RestoreResult, find_orphan_backups, list_backups
from .config import OrchestratorConfig, load_config
from .errors import PathTraversalError, ProviderError, UnsafePathError, ValidationError, VpsOpsError
from .health import HealthProbe, StatusResult
from .maintain import MaintainOptions, MaintainResult, MaintenanceEngine
from .manage import ServerManager
from .models import BackupManifest, ServerMode, ServerRecord, StepResult, StepStatus
from .provision import ProvisioningWorkflow, ProvisionRequest, ProvisionResult
from .ssh_channel import ExecResult, SSHChannel
from .sshkey import SshKeyManager
from .store import ServerStore

__all__ = [
    'BackupEngine', 'BackupResult', 'RestoreResult', 'find_orphan_backups', 'list_backups',
    'OrchestratorConfig', 'load_config',
    'VpsOpsError', 'ValidationError', 'UnsafePathError', 'PathTraversalError', 'ProviderError',
    'HealthProbe', 'StatusResult',
    'MaintenanceEngine', 'MaintainOptions', 'MaintainResult',
    'ServerManager',
    'ServerRecord', 'ServerMode', 'BackupManifest', 'StepResult', 'StepStatus',
    'ProvisioningWorkflow', 'ProvisionRequest', 'ProvisionResult',
    'SSHChannel', 'ExecResult',
    'SshKeyManager', 'ServerStore',
]
