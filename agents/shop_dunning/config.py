"""Tenant configuration for the shop dunning agent.

Loads and validates the per-shop (sales channel) settings from a JSON
or YAML file. Loading is all-or-nothing: a single invalid entry rejects
the whole file.
"""

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from .dto import DunningStage
from .errors import ConfigurationError

SALES_CHANNEL_ID_RE = re.compile(r"^[a-fA-F0-9]{32}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")

DUE_DAYS_POLICIES = ("reject", "coerce")

REQUIRED_KEYS = (
    "url",
    "api_key",
    "api_secret",
    "sales_channel_domain",
    "brevo_api_key",
    "no_invoice_email",
    "ze_template",
    "mahnung1_template",
    "mahnung2_template",
)

TEMPLATE_KEYS = {
    DunningStage.STAGE_1: "ze_template",
    DunningStage.STAGE_2: "mahnung1_template",
    DunningStage.STAGE_3: "mahnung2_template",
}


@dataclass(frozen=True)
class TenantConfig:
    """Settings of one shop sales channel. Immutable after loading."""

    base_url: str
    api_key: str
    api_secret: str
    sales_channel_domain: str
    brevo_api_key: str
    no_invoice_email: str
    templates: Mapping[DunningStage, str]
    due_days: int
    sales_channel_id: str | None = None
    sales_channel_name: str | None = None
    sender_name: str = "No Reply"

    @property
    def label(self) -> str:
        """Stable identifier for logs and dry-run folders."""
        return self.sales_channel_id or self.sales_channel_name or self.base_url

    @property
    def sender_email(self) -> str:
        return f"no-reply@{self.sales_channel_domain}"

    @property
    def due_seconds(self) -> int:
        return self.due_days * 24 * 60 * 60

    def template_for(self, stage: DunningStage) -> str:
        """Get template id for a dunning stage.

        Raises:
            ValueError: If stage is NONE
        """
        if stage not in self.templates:
            raise ValueError(f"No template for dunning stage: {stage.name}")
        return self.templates[stage]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary without secrets."""
        return {
            "base_url": self.base_url,
            "sales_channel_id": self.sales_channel_id,
            "sales_channel_name": self.sales_channel_name,
            "sales_channel_domain": self.sales_channel_domain,
            "no_invoice_email": self.no_invoice_email,
            "templates": {stage.name: tpl for stage, tpl in self.templates.items()},
            "due_days": self.due_days,
            "sender_name": self.sender_name,
        }


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def _validate_due_days(value: Any, index: int, policy: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"Invalid due_days in shop configuration at index {index}")
    if value <= 0:
        if policy == "coerce":
            return 1
        raise ConfigurationError(f"Invalid due_days in shop configuration at index {index}")
    return value


def parse_tenant(entry: Any, index: int, due_days_policy: str = "reject") -> TenantConfig:
    """Validate one shop entry and build its TenantConfig.

    Args:
        entry: Raw mapping from the configuration file
        index: Position in the file, used in error messages
        due_days_policy: 'reject' non-positive due_days or 'coerce' them to 1

    Returns:
        Validated tenant configuration

    Raises:
        ConfigurationError: On any missing or invalid value
    """
    if not isinstance(entry, Mapping):
        raise ConfigurationError(f"Shop configuration at index {index} must be an object")

    for key in REQUIRED_KEYS:
        if _is_empty(entry.get(key)):
            raise ConfigurationError(
                f"Missing or empty '{key}' in shop configuration at index {index}"
            )
    if "due_days" not in entry or entry["due_days"] is None:
        raise ConfigurationError(
            f"Missing or empty 'due_days' in shop configuration at index {index}"
        )

    channel_id = entry.get("sales_channel_id")
    channel_name = entry.get("sales_channel_name")
    if _is_empty(channel_id) and _is_empty(channel_name):
        raise ConfigurationError(
            f"Missing 'sales_channel_id' or 'sales_channel_name' in shop configuration at index {index}"
        )
    if not _is_empty(channel_id) and not SALES_CHANNEL_ID_RE.match(str(channel_id)):
        raise ConfigurationError(f"Invalid sales_channel_id in shop configuration at index {index}")

    url = str(entry["url"]).strip()
    if not url.startswith(("http://", "https://")):
        raise ConfigurationError(f"Invalid url in shop configuration at index {index}")

    email = str(entry["no_invoice_email"]).strip()
    if not EMAIL_RE.match(email):
        raise ConfigurationError(f"Invalid no_invoice_email in shop configuration at index {index}")

    due_days = _validate_due_days(entry["due_days"], index, due_days_policy)

    return TenantConfig(
        base_url=url.rstrip("/"),
        api_key=str(entry["api_key"]),
        api_secret=str(entry["api_secret"]),
        sales_channel_domain=str(entry["sales_channel_domain"]).strip(),
        brevo_api_key=str(entry["brevo_api_key"]),
        no_invoice_email=email,
        templates={stage: str(entry[key]) for stage, key in TEMPLATE_KEYS.items()},
        due_days=due_days,
        sales_channel_id=str(channel_id).lower() if not _is_empty(channel_id) else None,
        sales_channel_name=None if _is_empty(channel_name) else str(channel_name),
        sender_name=str(entry.get("sender_name") or "No Reply"),
    )


def parse_tenants(entries: Iterable[Any], due_days_policy: str = "reject") -> list[TenantConfig]:
    """Validate all entries; fail on the first invalid one."""
    if due_days_policy not in DUE_DAYS_POLICIES:
        raise ConfigurationError(f"Unknown due_days policy: {due_days_policy}")

    tenants = [parse_tenant(entry, index, due_days_policy) for index, entry in enumerate(entries)]
    if not tenants:
        raise ConfigurationError("Configuration contains no shop configurations")
    return tenants


def load_tenants(path: str | Path, due_days_policy: str = "reject") -> list[TenantConfig]:
    """Load tenant configurations from a JSON or YAML file.

    The file holds either a list of shop objects or an object with a
    'shops' list.

    Args:
        path: Path to the configuration file
        due_days_policy: 'reject' or 'coerce'

    Returns:
        List of validated tenant configurations

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    text = config_path.read_text(encoding="utf-8")
    if config_path.suffix.lower() in (".yml", ".yaml"):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in configuration file: {exc}") from exc
    else:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON in configuration file: {exc.msg}") from exc

    if isinstance(data, Mapping) and "shops" in data:
        data = data["shops"]

    if not isinstance(data, list):
        raise ConfigurationError("Configuration must be an array of shop configurations")

    return parse_tenants(data, due_days_policy)
