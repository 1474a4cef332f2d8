"""Operation record, lifecycle statuses and the operation type table."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

# Statuses
QUEUED = 'queued'
RUNNING = 'running'
SUCCESS = 'success'
FAILED = 'failed'
CANCELLED = 'cancelled'

STATUSES = (QUEUED, RUNNING, SUCCESS, FAILED, CANCELLED)
TERMINAL_STATUSES = frozenset({SUCCESS, FAILED, CANCELLED})

# Execution strategies
INLINE = 'inline'
TOFU = 'tofu'
ANSIBLE = 'ansible'

# Environment sentinel for shared, non environment-scoped infrastructure
SHARED_ENV = 'shared'

# Deploy builds every component declared in the manifest
ALL_COMPONENTS = ('*',)


def resource_key(app: str, env: Optional[str]) -> str:
    """Serialization unit: all operations with the same key run one at a time."""
    return f'{app}:{env or SHARED_ENV}'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat(timespec='microseconds') if ts else None


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class OperationType:
    """How one operation type executes.

    Attributes:
        name: Type identifier (e.g. 'infra-apply')
        family: Execution strategy (inline, tofu, ansible)
        timeout: Default timeout in seconds (None = config default)
        action: tofu action (plan, apply, destroy)
        shared: tofu runs against the shared workspace
        playbook: ansible playbook path relative to the ansible dir
        extra_vars: Fixed extra vars merged into the operation vars
        retries: Extra attempts after a failed first run
        builds: Components built before spawning (ALL_COMPONENTS = every one)
    """
    name: str
    family: str
    timeout: Optional[int] = None
    action: Optional[str] = None
    shared: bool = False
    playbook: Optional[str] = None
    extra_vars: tuple = ()
    retries: int = 0
    builds: tuple = ()

    @property
    def is_infra(self) -> bool:
        return self.family == TOFU

    @property
    def is_inline(self) -> bool:
        return self.family == INLINE

    @property
    def needs_checkout(self) -> bool:
        """Everything except declarative-infra runs against the app source."""
        return self.family != TOFU


def _ansible(name: str, playbook: str, timeout: int = 30 * 60, builds: tuple = (), **extra) -> OperationType:
    return OperationType(
        name=name, family=ANSIBLE, timeout=timeout, playbook=playbook,
        builds=builds, extra_vars=tuple(sorted(extra.items())),
    )


def _tofu(name: str, action: str, timeout: int, shared: bool = False) -> OperationType:
    # apply is retried once: the provider may not populate fields that
    # dependent resources read until the VM exists
    return OperationType(
        name=name, family=TOFU, timeout=timeout, action=action, shared=shared,
        retries=1 if action == 'apply' else 0,
    )


OPERATION_TYPES: dict[str, OperationType] = {t.name: t for t in [
    _ansible('provision', 'playbooks/site.yml', timeout=45 * 60),
    _ansible('deploy', 'playbooks/deploy-all.yml', builds=ALL_COMPONENTS),
    _ansible('deploy-server', 'playbooks/deploy-all.yml', builds=('server',), deploy_component='server'),
    _ansible('deploy-client', 'playbooks/deploy-all.yml', builds=('client',), deploy_component='client'),
    _ansible('rollback', 'playbooks/deploy-all.yml', rollback='true'),
    _ansible('db-setup', 'playbooks/db-setup.yml'),
    _ansible('db-migrate', 'playbooks/db-migrate.yml'),
    _ansible('db-backup', 'playbooks/db-backup.yml', timeout=60 * 60),
    _ansible('db-seed', 'playbooks/env-seed.yml'),
    _ansible('env-start', 'playbooks/env-start.yml', timeout=10 * 60),
    _ansible('env-stop', 'playbooks/env-stop.yml', timeout=10 * 60),
    _tofu('infra-plan', 'plan', timeout=10 * 60),
    _tofu('infra-apply', 'apply', timeout=30 * 60),
    _tofu('infra-destroy', 'destroy', timeout=30 * 60),
    _tofu('infra-plan-shared', 'plan', timeout=10 * 60, shared=True),
    _tofu('infra-apply-shared', 'apply', timeout=30 * 60, shared=True),
    OperationType(name='prepare-ssh', family=INLINE, timeout=10 * 60),
]}


def get_operation_type(name: str) -> Optional[OperationType]:
    return OPERATION_TYPES.get(name)


@dataclass
class Operation:
    """A tracked unit of orchestration work and its audit record."""
    id: str
    app: str
    env: Optional[str]
    type: str
    status: str = QUEUED
    ref: Optional[str] = None
    vars: dict = field(default_factory=dict)
    callback_url: Optional[str] = None
    output: str = ''
    error: Optional[str] = None
    initiated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    @property
    def key(self) -> str:
        return resource_key(self.app, self.env)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, include_output: bool = True) -> dict:
        d: dict[str, Any] = {
            'id': self.id,
            'app': self.app,
            'env': self.env,
            'type': self.type,
            'status': self.status,
            'ref': self.ref,
            'vars': self.vars,
            'callback_url': self.callback_url,
            'error': self.error,
            'initiated_by': self.initiated_by,
            'created_at': format_ts(self.created_at),
            'started_at': format_ts(self.started_at),
            'completed_at': format_ts(self.completed_at),
            'duration_ms': self.duration_ms,
        }
        if include_output:
            d['output'] = self.output
        return d

    @classmethod
    def from_row(cls, row) -> 'Operation':
        """Build from a sqlite3.Row."""
        return cls(
            id=row['id'],
            app=row['app'],
            env=row['env'],
            type=row['type'],
            status=row['status'],
            ref=row['ref'],
            vars=json.loads(row['vars']) if row['vars'] else {},
            callback_url=row['callback_url'],
            output=row['output'] or '',
            error=row['error'],
            initiated_by=row['initiated_by'],
            created_at=parse_ts(row['created_at']),
            started_at=parse_ts(row['started_at']),
            completed_at=parse_ts(row['completed_at']),
            duration_ms=row['duration_ms'],
        )
