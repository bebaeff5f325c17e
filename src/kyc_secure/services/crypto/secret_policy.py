"""Secret policy loader.

Loads secret_policy.yaml and checks user secrets before they reach the KDF.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

import yaml

from kyc_secure.services.crypto.errors import WeakSecretError

logger = logging.getLogger(__name__)

# Default path to secret_policy.yaml
DEFAULT_POLICY_PATH = Path(__file__).parent.parent.parent / "specs" / "secret_policy.yaml"


@dataclass(frozen=True)
class SecretPolicy:
    """Parsed secret policy."""

    schema_version: str
    min_length: int
    max_length: int
    case_insensitive: bool
    reject_repeated_character: bool
    blocklist: FrozenSet[str]

    def violations(self, secret: str) -> List[str]:
        """Return the list of rules the secret breaks (empty if acceptable)."""
        reasons = []
        if len(secret) < self.min_length:
            reasons.append(f"shorter than {self.min_length} characters")
        if len(secret) > self.max_length:
            reasons.append(f"longer than {self.max_length} characters")

        candidate = secret.lower() if self.case_insensitive else secret
        if candidate in self.blocklist:
            reasons.append("appears in the common-password blocklist")

        if self.reject_repeated_character and secret and len(set(secret)) == 1:
            reasons.append("consists of a single repeated character")
        return reasons

    def check(self, secret: str) -> None:
        """Raise WeakSecretError if the secret breaks any rule.

        Raises:
            WeakSecretError: If the secret is not a string or violates the policy.
        """
        if not isinstance(secret, str):
            raise WeakSecretError("Secret must be a string", ["not a string"])

        reasons = self.violations(secret)
        if reasons:
            # Never log the secret itself
            logger.info(f"Secret rejected by policy: {len(reasons)} rule(s) violated")
            raise WeakSecretError(f"Secret rejected: {'; '.join(reasons)}", reasons)


class SecretPolicyLoader:
    """Loader for the secret policy from YAML."""

    _cached_policy: Optional[SecretPolicy] = None
    _cache_path: Optional[Path] = None

    @classmethod
    def load(cls, policy_path: Optional[Path] = None) -> SecretPolicy:
        """Load the secret policy from a YAML file.

        Args:
            policy_path: Path to secret_policy.yaml. Uses default if not specified.

        Returns:
            Parsed SecretPolicy.

        Raises:
            FileNotFoundError: If the policy file doesn't exist.
            ValueError: If the policy is invalid.
        """
        path = policy_path or DEFAULT_POLICY_PATH

        if cls._cached_policy is not None and cls._cache_path == path:
            return cls._cached_policy

        if not path.exists():
            raise FileNotFoundError(f"Secret policy not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        policy = cls._parse_policy(raw)

        cls._cached_policy = policy
        cls._cache_path = path
        logger.debug(f"Loaded secret policy from {path} ({len(policy.blocklist)} blocked)")

        return policy

    @classmethod
    def clear_cache(cls) -> None:
        """Clear the cached policy."""
        cls._cached_policy = None
        cls._cache_path = None

    @classmethod
    def _parse_policy(cls, raw: Dict) -> SecretPolicy:
        settings = raw.get("settings", {}) or {}
        case_insensitive = settings.get("case_insensitive", True)

        min_length = int(settings.get("min_length", 8))
        max_length = int(settings.get("max_length", 1024))
        if min_length < 1 or max_length < min_length:
            raise ValueError(
                f"Invalid secret policy lengths: min={min_length}, max={max_length}"
            )

        blocklist = raw.get("blocklist", []) or []
        if not isinstance(blocklist, list):
            raise ValueError("Secret policy 'blocklist' must be a list")

        entries = {str(item) for item in blocklist}
        if case_insensitive:
            entries = {item.lower() for item in entries}

        return SecretPolicy(
            schema_version=str(raw.get("schema_version", "1.0")),
            min_length=min_length,
            max_length=max_length,
            case_insensitive=case_insensitive,
            reject_repeated_character=settings.get("reject_repeated_character", True),
            blocklist=frozenset(entries),
        )
