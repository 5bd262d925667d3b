from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union
from urllib.parse import urlparse


@dataclass(frozen=True)
class PostgresUnit:
    """PostgreSQL database addressed by a connection URI"""
    uri: str

    @property
    def database(self) -> str:
        return urlparse(self.uri).path.lstrip('/') or 'postgres'

    def __repr__(self):
        return f'<PostgresUnit database={self.database}>'


@dataclass(frozen=True)
class MongoUnit:
    """MongoDB deployment addressed by a connection URI"""
    uri: str

    @property
    def database(self) -> str:
        return urlparse(self.uri).path.lstrip('/') or 'all databases'

    def __repr__(self):
        return f'<MongoUnit database={self.database}>'


@dataclass(frozen=True)
class DirectoryUnit:
    """Directory captured as <name>.tar.gz"""
    path: str
    name: str


@dataclass(frozen=True)
class FileUnit:
    """Single file captured as <name>"""
    path: str
    name: str


BackupUnit = Union[PostgresUnit, MongoUnit, DirectoryUnit, FileUnit]


class BackupState(Enum):
    """Backup run states, in execution order"""
    VALIDATE = 'validate'
    STOP_SERVICES = 'stop_services'
    COLLECT = 'collect'
    START_SERVICES = 'start_services'
    ARCHIVE = 'archive'
    ENCRYPT = 'encrypt'
    STORE = 'store'
    RETAIN = 'retain'
    NOTIFY = 'notify'
    DONE = 'done'
    FAILED = 'failed'


class RestoreState(Enum):
    """Restore run states, in execution order"""
    VALIDATE = 'validate'
    LOAD = 'load'
    DECRYPT = 'decrypt'
    EXTRACT = 'extract'
    CONFIRM = 'confirm'
    STOP_ALL_SERVICES = 'stop_all_services'
    RESTORE_UNITS = 'restore_units'
    START_ALL_SERVICES = 'start_all_services'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class Artifact:
    """A stored backup artifact"""
    key: str
    size: Optional[int] = None
    modified: Optional[datetime] = None

    @property
    def filename(self) -> str:
        return self.key.rsplit('/', 1)[-1]


@dataclass
class BackupResult:
    """Outcome of one backup run"""
    name: Optional[str]
    status: str = 'running'  # running, success, failed
    state: BackupState = BackupState.VALIDATE
    timestamp: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    artifact: Optional[str] = None
    key: Optional[str] = None
    file_size_bytes: Optional[int] = None
    encrypted: bool = False
    error_message: Optional[str] = None
    failed_state: Optional[BackupState] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'

    def __repr__(self):
        return f'<BackupResult name={self.name} status={self.status}>'


@dataclass
class RestoreResult:
    """Outcome of one restore run"""
    name: Optional[str]
    timestamp: str
    status: str = 'running'
    state: RestoreState = RestoreState.VALIDATE
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    key: Optional[str] = None
    restored: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    failed_state: Optional[RestoreState] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'

    def __repr__(self):
        return f'<RestoreResult name={self.name} timestamp={self.timestamp} status={self.status}>'
