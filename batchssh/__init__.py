"""batchssh - dispatch one shell command to many SSH hosts and track each outcome."""

from .config import Inventory, InventoryResolver, load_inventory, load_inventory_from_file
from .coordinator import BatchCoordinator
from .errors import (
    AlreadyTerminal,
    BatchNotFound,
    BatchSSHError,
    BufferExceeded,
    CommandError,
    CommandTimeout,
    HostConnectionError,
    InvalidRequest,
    PoolExhausted,
    Unauthorized,
)
from .executor import HostExecutor
from .logger import ExecutionLogger
from .models import (
    AuthMethod,
    BatchExecution,
    BatchStatus,
    BatchTemplate,
    Credentials,
    ExecutionPolicy,
    HostResult,
    HostStatus,
    HostTarget,
    TargetSelector,
    Topology,
)
from .pool import ConnectionPool
from .session import RemoteSession
from .store import MemoryStore, PersistenceGateway

__version__ = "0.1.0"
