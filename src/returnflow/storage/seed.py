"""Load policy records from YAML into a storage backend."""

import logging
from pathlib import Path
from typing import List, Union

import yaml
from pydantic import ValidationError

from returnflow.common.constants import Tables
from returnflow.common.exceptions import ConfigurationError
from returnflow.governance.schemas import PolicyRules
from returnflow.storage.base import Record, Storage

logger = logging.getLogger(__name__)


def read_policy_seed(path: Union[str, Path]) -> List[Record]:
    """Parse and validate a policy seed file.

    The file holds a top-level ``policies`` list; each item needs a
    ``business_id`` and a ``rules`` mapping that validates as PolicyRules.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Policy seed file not found: {path}")

    with open(path, "r") as f:
        raw_config = yaml.safe_load(f) or {}

    records = []
    for item in raw_config.get("policies", []):
        if "business_id" not in item:
            raise ConfigurationError("Policy seed entry is missing business_id", {"entry": item})
        try:
            rules = PolicyRules.model_validate(item.get("rules", {}))
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid rules for business {item['business_id']}",
                {"errors": e.errors()},
            )
        records.append({
            "business_id": item["business_id"],
            "version": str(item.get("version", "1.0")),
            "is_active": bool(item.get("is_active", True)),
            "rules": rules.model_dump(),
        })
    return records


async def load_policy_seed(storage: Storage, path: Union[str, Path]) -> int:
    """Insert every policy from ``path`` into ``storage``; returns the count."""
    records = read_policy_seed(path)
    for record in records:
        await storage.insert(Tables.POLICIES, record)
    logger.info("Loaded %d policies from %s", len(records), path)
    return len(records)
