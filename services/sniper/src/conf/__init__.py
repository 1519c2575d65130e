from typing import Literal, Optional

from pydantic import BaseModel

from utils import env, log
from utils.env import EnvVarSpec

logger = log.get_logger(__name__)

#### Types ####

class RetryConf(BaseModel):
    max_attempts: int
    base_delay_seconds: float
    max_delay_seconds: float
    timeout_seconds: float

class EngineConf(BaseModel):
    placement_lead_seconds: float
    placement_max_align_seconds: float
    outcome_check_delay_seconds: float
    job_execution_ceiling_seconds: float
    operator_notify_id: str
    placement_retry: RetryConf
    outcome_retry: RetryConf
    lookup_retry: RetryConf

class MonitorConf(BaseModel):
    interval_seconds: int
    retention_days: int
    retention_sweep_interval_seconds: int

class SchedulerConf(BaseModel):
    backend: Literal["apscheduler", "resonate"]
    resonate_host: Optional[str] = None
    resonate_group: str
    misfire_grace_seconds: int

class MarketplaceConf(BaseModel):
    base_url: str
    api_key: Optional[str] = None
    timeout_seconds: float

class TokenStoreConf(BaseModel):
    base_url: str
    refresh_margin_seconds: int
    timeout_seconds: float

class NotifierConf(BaseModel):
    webhook_url: Optional[str] = None
    timeout_seconds: float

#### Env Vars ####

## Logging ##

LOG_LEVEL = EnvVarSpec(id="LOG_LEVEL", default="INFO")

ENVIRONMENT = EnvVarSpec(id="ENVIRONMENT", default="development")

## Scheduling ##

SCHEDULER_BACKEND = EnvVarSpec(
    id="SCHEDULER_BACKEND",
    default="apscheduler",
    parse=lambda x: x.strip().lower(),
)

RESONATE_HOST = EnvVarSpec(id="RESONATE_HOST", is_optional=True)

RESONATE_GROUP = EnvVarSpec(id="RESONATE_GROUP", default="bid-worker")

SCHEDULER_MISFIRE_GRACE_SECONDS = EnvVarSpec(
    id="SCHEDULER_MISFIRE_GRACE_SECONDS",
    default="30",
    parse=int,
    type=(int, ...),
)

## Marketplace ##

MARKETPLACE_BASE_URL = EnvVarSpec(id="MARKETPLACE_BASE_URL")

MARKETPLACE_API_KEY = EnvVarSpec(
    id="MARKETPLACE_API_KEY", is_optional=True, is_secret=True
)

MARKETPLACE_TIMEOUT_SECONDS = EnvVarSpec(
    id="MARKETPLACE_TIMEOUT_SECONDS",
    default="4",
    parse=float,
    type=(float, ...),
)

## Credentials ##

TOKEN_STORE_URL = EnvVarSpec(id="TOKEN_STORE_URL")

CREDENTIAL_REFRESH_MARGIN_SECONDS = EnvVarSpec(
    id="CREDENTIAL_REFRESH_MARGIN_SECONDS",
    default="300",
    parse=int,
    type=(int, ...),
)

## Notifications ##

NOTIFIER_WEBHOOK_URL = EnvVarSpec(id="NOTIFIER_WEBHOOK_URL", is_optional=True)

OPERATOR_NOTIFY_ID = EnvVarSpec(id="OPERATOR_NOTIFY_ID", default="operator")

## Execution ##

PLACEMENT_LEAD_SECONDS = EnvVarSpec(
    id="PLACEMENT_LEAD_SECONDS",
    default="5",
    parse=float,
    type=(float, ...),
)

PLACEMENT_MAX_ALIGN_SECONDS = EnvVarSpec(
    id="PLACEMENT_MAX_ALIGN_SECONDS",
    default="10",
    parse=float,
    type=(float, ...),
)

PLACEMENT_MAX_ATTEMPTS = EnvVarSpec(
    id="PLACEMENT_MAX_ATTEMPTS",
    default="3",
    parse=int,
    type=(int, ...),
)

OUTCOME_CHECK_DELAY_SECONDS = EnvVarSpec(
    id="OUTCOME_CHECK_DELAY_SECONDS",
    default="60",
    parse=float,
    type=(float, ...),
)

OUTCOME_MAX_ATTEMPTS = EnvVarSpec(
    id="OUTCOME_MAX_ATTEMPTS",
    default="5",
    parse=int,
    type=(int, ...),
)

RETRY_BASE_DELAY_SECONDS = EnvVarSpec(
    id="RETRY_BASE_DELAY_SECONDS",
    default="0.25",
    parse=float,
    type=(float, ...),
)

RETRY_MAX_DELAY_SECONDS = EnvVarSpec(
    id="RETRY_MAX_DELAY_SECONDS",
    default="2",
    parse=float,
    type=(float, ...),
)

JOB_EXECUTION_CEILING_SECONDS = EnvVarSpec(
    id="JOB_EXECUTION_CEILING_SECONDS",
    default="60",
    parse=float,
    type=(float, ...),
)

## Periodic jobs ##

PRICE_MONITOR_INTERVAL_SECONDS = EnvVarSpec(
    id="PRICE_MONITOR_INTERVAL_SECONDS",
    default="300",
    parse=int,
    type=(int, ...),
)

BID_RETENTION_DAYS = EnvVarSpec(
    id="BID_RETENTION_DAYS",
    default="90",
    parse=int,
    type=(int, ...),
)

RETENTION_SWEEP_INTERVAL_SECONDS = EnvVarSpec(
    id="RETENTION_SWEEP_INTERVAL_SECONDS",
    default="3600",
    parse=int,
    type=(int, ...),
)

#### Validation ####
VALIDATED_ENV_VARS = [
    LOG_LEVEL,
    SCHEDULER_BACKEND,
    SCHEDULER_MISFIRE_GRACE_SECONDS,
    MARKETPLACE_BASE_URL,
    MARKETPLACE_TIMEOUT_SECONDS,
    TOKEN_STORE_URL,
    CREDENTIAL_REFRESH_MARGIN_SECONDS,
    PLACEMENT_LEAD_SECONDS,
    PLACEMENT_MAX_ALIGN_SECONDS,
    PLACEMENT_MAX_ATTEMPTS,
    OUTCOME_CHECK_DELAY_SECONDS,
    OUTCOME_MAX_ATTEMPTS,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_DELAY_SECONDS,
    JOB_EXECUTION_CEILING_SECONDS,
    PRICE_MONITOR_INTERVAL_SECONDS,
    BID_RETENTION_DAYS,
    RETENTION_SWEEP_INTERVAL_SECONDS,
]

# The durable backend needs a server to talk to
if env.raw(SCHEDULER_BACKEND) == "resonate":
    VALIDATED_ENV_VARS.append(EnvVarSpec(id=RESONATE_HOST.id))

def validate() -> bool:
    ok = env.validate(VALIDATED_ENV_VARS)
    backend = env.parse(SCHEDULER_BACKEND)
    if backend not in ("apscheduler", "resonate"):
        logger.error(f"SCHEDULER_BACKEND must be 'apscheduler' or 'resonate', got '{backend}'")
        ok = False

    # Every external call must finish well inside one job invocation
    timeout = env.parse(MARKETPLACE_TIMEOUT_SECONDS)
    ceiling = env.parse(JOB_EXECUTION_CEILING_SECONDS)
    if ok and timeout >= ceiling:
        logger.error(
            f"MARKETPLACE_TIMEOUT_SECONDS ({timeout}) must be shorter than "
            f"JOB_EXECUTION_CEILING_SECONDS ({ceiling})"
        )
        ok = False
    return ok

#### Getters ####

def get_log_level() -> str:
    return env.parse(LOG_LEVEL)

def get_environment() -> str:
    return env.parse(ENVIRONMENT)

def get_engine_conf() -> EngineConf:
    timeout = env.parse(MARKETPLACE_TIMEOUT_SECONDS)
    base_delay = env.parse(RETRY_BASE_DELAY_SECONDS)
    max_delay = env.parse(RETRY_MAX_DELAY_SECONDS)

    def retry(max_attempts: int) -> RetryConf:
        return RetryConf(
            max_attempts=max(1, max_attempts),
            base_delay_seconds=max(0.0, base_delay),
            max_delay_seconds=max(base_delay, max_delay),
            timeout_seconds=timeout,
        )

    return EngineConf(
        placement_lead_seconds=env.parse(PLACEMENT_LEAD_SECONDS),
        placement_max_align_seconds=max(0.0, env.parse(PLACEMENT_MAX_ALIGN_SECONDS)),
        outcome_check_delay_seconds=max(0.0, env.parse(OUTCOME_CHECK_DELAY_SECONDS)),
        job_execution_ceiling_seconds=env.parse(JOB_EXECUTION_CEILING_SECONDS),
        operator_notify_id=env.parse(OPERATOR_NOTIFY_ID),
        placement_retry=retry(env.parse(PLACEMENT_MAX_ATTEMPTS)),
        outcome_retry=retry(env.parse(OUTCOME_MAX_ATTEMPTS)),
        lookup_retry=retry(2),
    )

def get_monitor_conf() -> MonitorConf:
    return MonitorConf(
        interval_seconds=max(1, env.parse(PRICE_MONITOR_INTERVAL_SECONDS)),
        retention_days=max(1, env.parse(BID_RETENTION_DAYS)),
        retention_sweep_interval_seconds=max(60, env.parse(RETENTION_SWEEP_INTERVAL_SECONDS)),
    )

def get_scheduler_conf() -> SchedulerConf:
    return SchedulerConf(
        backend=env.parse(SCHEDULER_BACKEND),
        resonate_host=env.parse(RESONATE_HOST),
        resonate_group=env.parse(RESONATE_GROUP),
        misfire_grace_seconds=env.parse(SCHEDULER_MISFIRE_GRACE_SECONDS),
    )

def get_marketplace_conf() -> MarketplaceConf:
    return MarketplaceConf(
        base_url=env.parse(MARKETPLACE_BASE_URL).rstrip("/"),
        api_key=env.parse(MARKETPLACE_API_KEY),
        timeout_seconds=env.parse(MARKETPLACE_TIMEOUT_SECONDS),
    )

def get_token_store_conf() -> TokenStoreConf:
    return TokenStoreConf(
        base_url=env.parse(TOKEN_STORE_URL).rstrip("/"),
        refresh_margin_seconds=max(0, env.parse(CREDENTIAL_REFRESH_MARGIN_SECONDS)),
        timeout_seconds=env.parse(MARKETPLACE_TIMEOUT_SECONDS),
    )

def get_notifier_conf() -> NotifierConf:
    return NotifierConf(
        webhook_url=env.parse(NOTIFIER_WEBHOOK_URL),
        timeout_seconds=env.parse(MARKETPLACE_TIMEOUT_SECONDS),
    )
