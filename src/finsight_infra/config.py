"""
Environment profile management
Validates per-environment configuration files and exposes them as immutable profiles
"""
import json
import logging
import os
import re
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Annotated, Any, List, Mapping, Optional, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .errors import ConfigValidationError, ProfileNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = os.environ.get('FINSIGHT_CONFIG_DIR', 'config')
PRODUCTION_ENVIRONMENT = 'prod'
DEFAULT_ALERT_EMAIL = 'dev-alerts@finsight.local'

_ENVIRONMENT_NAME = re.compile(r'^[a-z][a-z0-9-]{0,31}$')
_EMAIL_ADDRESS = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


class Tier(str, Enum):
    """Production-like flag driving every environment-conditioned policy table"""
    PRODUCTION = "production"
    NON_PRODUCTION = "non-production"


def _check_email(value: str) -> str:
    if not _EMAIL_ADDRESS.match(value):
        raise ValueError(f"not a valid email address: {value!r}")
    return value


EmailAddress = Annotated[str, AfterValidator(_check_email)]


class _ProfileSection(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra='forbid',
    )


class DatabaseConfig(_ProfileSection):
    """Requested database sizing; must agree with the tier policy row"""
    instance_type: str
    multi_az: bool
    deletion_protection: bool


class LambdaConfig(_ProfileSection):
    """Profile-level default resource limits for compute units"""
    memory_size: int = Field(..., ge=128, le=10240)
    timeout: int = Field(..., ge=1, le=900)


class SesConfig(_ProfileSection):
    from_email: EmailAddress
    sending_quota: int = Field(..., ge=1)
    sending_rate: int = Field(..., ge=1)
    bounce_email: EmailAddress = 'bounce-notifications@finsight.com'
    complaint_email: EmailAddress = 'complaint-notifications@finsight.com'


class AlarmOverride(_ProfileSection):
    threshold: Optional[float] = Field(None, ge=0)
    evaluation_periods: Optional[int] = Field(None, ge=1)


# Read-only, so a loaded profile cannot change under the compiler
ReadOnlyOverrides = Annotated[Mapping[str, AlarmOverride], AfterValidator(MappingProxyType)]


class EnvironmentProfile(_ProfileSection):
    """
    Validated configuration record for one environment.
    Immutable once loaded and consumed by every builder.
    """
    environment: str
    region: str
    tier: Tier
    auth0_domain: str
    auth0_audience: str
    auth0_client_id: str
    database_config: DatabaseConfig
    lambda_config: LambdaConfig
    ses_config: SesConfig
    custom_domain: Optional[str] = None
    github_owner: Optional[str] = None
    repository_name: Optional[str] = None
    tracing: bool = True
    alert_email: EmailAddress = DEFAULT_ALERT_EMAIL
    alarm_overrides: ReadOnlyOverrides = Field(default_factory=lambda: MappingProxyType({}))

    @model_validator(mode='before')
    @classmethod
    def derive_tier(cls, data: Any) -> Any:
        """Default the tier from the environment name when the file omits it"""
        if isinstance(data, Mapping) and data.get('tier') is None:
            tier = Tier.PRODUCTION if data.get('environment') == PRODUCTION_ENVIRONMENT else Tier.NON_PRODUCTION
            data = {**data, 'tier': tier}
        return data

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, value: str) -> str:
        if not _ENVIRONMENT_NAME.match(value):
            raise ValueError("environment must be lowercase letters, digits and dashes")
        return value

    @property
    def is_production_like(self) -> bool:
        return self.tier is Tier.PRODUCTION

    @property
    def has_custom_domain(self) -> bool:
        return bool(self.custom_domain)


def load_profile(data: Mapping[str, Any]) -> EnvironmentProfile:
    """Validate raw configuration data into an EnvironmentProfile"""
    try:
        return EnvironmentProfile.model_validate(data)
    except ValidationError as e:
        fields = ['.'.join(str(part) for part in error['loc']) for error in e.errors()]
        details = '; '.join(
            f"{field or '<root>'}: {error['msg']}" for field, error in zip(fields, e.errors())
        )
        raise ConfigValidationError(f"Invalid environment profile: {details}", fields=fields) from e


class ProfileLoader:
    """Loads environment profiles from <config_dir>/<environment>.json"""

    def __init__(self, config_dir: Union[str, Path] = DEFAULT_CONFIG_DIR):
        self.config_dir = Path(config_dir)

    def available(self) -> List[str]:
        """List environment names that have a profile file"""
        if not self.config_dir.is_dir():
            return []
        return sorted(path.stem for path in self.config_dir.glob('*.json'))

    def load(self, environment_name: str) -> EnvironmentProfile:
        path = self.config_dir / f"{environment_name}.json"
        if not path.is_file():
            raise ProfileNotFoundError(
                f"No profile for environment '{environment_name}' in {self.config_dir}"
            )

        logger.info(f"Loading environment profile from {path}")
        with open(path, encoding='utf-8') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigValidationError(f"Profile {path} is not valid JSON: {e}") from e

        profile = load_profile(data)
        if profile.environment != environment_name:
            raise ConfigValidationError(
                f"Profile {path} declares environment '{profile.environment}'",
                fields=['environment'],
            )
        return profile
