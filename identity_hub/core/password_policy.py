"""Password policy validation and strength scoring."""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

from identity_hub.core.similarity import normalize


COMMON_PASSWORDS = (
    "password", "password123", "123456", "123456789", "qwerty", "abc123",
    "password1", "admin", "administrador", "welcome", "welcome123", "changeme",
    "letmein", "master", "secret", "superman", "batman", "dragon", "monkey",
    "computer", "internet", "service",
)

KEYBOARD_SEQUENCES = ("123456", "654321", "qwerty", "asdfgh", "zxcvbn", "abcdef", "fedcba")

# Owner hints recognised by ``validate``
HINT_KEYS = ("username", "given_name", "surname", "email")


@dataclass
class PasswordPolicy:
    min_length: int = 8
    max_length: int = 128
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = True
    special_chars: str = "@$!%*?&"
    prevent_common_passwords: bool = True
    prevent_personal_info: bool = True
    max_repeating_chars: int = 3
    prevent_sequential_chars: bool = True

    @classmethod
    def strict(cls) -> "PasswordPolicy":
        return cls()

    @classmethod
    def relaxed(cls) -> "PasswordPolicy":
        """Minimum 8 characters with an uppercase letter and a digit; nothing else."""
        return cls(
            require_lowercase=False,
            require_special_chars=False,
            prevent_common_passwords=False,
            prevent_personal_info=False,
            max_repeating_chars=0,
            prevent_sequential_chars=False,
        )

    @classmethod
    def from_preset(cls, name: str) -> "PasswordPolicy":
        presets = {"strict": cls.strict, "relaxed": cls.relaxed}
        try:
            return presets[name]()
        except KeyError:
            raise ValueError(f"Unknown password policy preset: {name}")


@dataclass(frozen=True)
class PolicyViolation:
    code: str
    message: str


@dataclass
class ValidationResult:
    is_valid: bool
    violations: list[PolicyViolation] = field(default_factory=list)
    strength_score: int = 0
    strength_label: str = "weak"

    @property
    def messages(self) -> list[str]:
        return [violation.message for violation in self.violations]

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "violations": [{"code": v.code, "message": v.message} for v in self.violations],
            "strength_score": self.strength_score,
            "strength_label": self.strength_label,
        }


class PasswordPolicyEngine:
    """Validate candidate passwords and score their strength.

    Args:
        policy: Default policy used when ``validate`` is not given one
    """

    def __init__(self, policy: PasswordPolicy | None = None):
        self.policy = policy or PasswordPolicy()

    def validate(
        self,
        secret: str,
        owner_hints: Optional[Mapping[str, str]] = None,
        policy: PasswordPolicy | None = None,
    ) -> ValidationResult:
        """Check ``secret`` against the policy and compute a 0-100 strength score.

        Args:
            secret: Candidate password
            owner_hints: username, given_name, surname and/or email of the owner
            policy: Override the engine's default policy

        Returns:
            ValidationResult with violations, score and label
        """
        policy = policy or self.policy
        secret = secret or ""
        violations: list[PolicyViolation] = []
        score = 0

        if len(secret) < policy.min_length:
            violations.append(PolicyViolation("too_short", f"Password must be at least {policy.min_length} characters long"))
        else:
            score += min(20, (len(secret) - policy.min_length + 1) * 2)
        if len(secret) > policy.max_length:
            violations.append(PolicyViolation("too_long", f"Password must not exceed {policy.max_length} characters"))

        has_upper = any(char.isupper() for char in secret)
        has_lower = any(char.islower() for char in secret)
        has_digit = any(char.isdigit() for char in secret)
        has_special = any(char in policy.special_chars for char in secret)

        if policy.require_uppercase and not has_upper:
            violations.append(PolicyViolation("missing_uppercase", "Password must contain at least one uppercase letter"))
        if policy.require_lowercase and not has_lower:
            violations.append(PolicyViolation("missing_lowercase", "Password must contain at least one lowercase letter"))
        if policy.require_numbers and not has_digit:
            violations.append(PolicyViolation("missing_number", "Password must contain at least one number"))
        if policy.require_special_chars and not has_special:
            violations.append(PolicyViolation(
                "missing_special",
                f"Password must contain at least one special character ({policy.special_chars})",
            ))
        score += 15 * has_upper + 15 * has_lower + 15 * has_digit + 20 * has_special

        lowered = secret.lower()

        if policy.prevent_common_passwords and _contains_common_password(lowered):
            violations.append(PolicyViolation("common_password", "Password is too common or contains a common password"))
            score -= 30

        if policy.prevent_personal_info and _contains_personal_info(lowered, owner_hints or {}):
            violations.append(PolicyViolation("personal_info", "Password must not contain your name, username or email"))
            score -= 25

        if policy.max_repeating_chars > 0 and re.search(rf"(.)\1{{{policy.max_repeating_chars},}}", secret):
            violations.append(PolicyViolation(
                "repeating_chars",
                f"Password must not repeat the same character more than {policy.max_repeating_chars} times in a row",
            ))
            score -= 15

        if policy.prevent_sequential_chars and _contains_sequence(lowered):
            violations.append(PolicyViolation("sequence", "Password must not contain keyboard or alphabet sequences"))
            score -= 20

        score += min(15, len(set(secret)))
        score = max(0, min(100, score))

        return ValidationResult(
            is_valid=not violations,
            violations=violations,
            strength_score=score,
            strength_label=strength_label(score),
        )

    def suggest(self, result: ValidationResult) -> list[str]:
        """Ordered improvement tips for a validation result."""
        tips = []
        if result.strength_label == "weak":
            tips.extend([
                "Use at least 12 characters",
                "Combine uppercase and lowercase letters, numbers and symbols",
                "Avoid common words and personal information",
            ])
        elif result.strength_label == "fair":
            tips.extend([
                "Add more characters to strengthen the password",
                "Include special characters such as @$!%*?&",
            ])
        elif result.strength_label == "good":
            tips.append("Consider a longer passphrase for extra security")
        tips.extend([
            "Use a password manager to generate and store unique passwords",
            "Change your password every 90 to 180 days",
        ])
        return tips


def strength_label(score: int) -> str:
    if score < 30:
        return "weak"
    if score < 50:
        return "fair"
    if score < 80:
        return "good"
    return "strong"


def _contains_common_password(lowered: str) -> bool:
    if not lowered:
        return False
    return any(common in lowered or lowered in common for common in COMMON_PASSWORDS)


def _contains_personal_info(lowered: str, hints: Mapping[str, str]) -> bool:
    folded = normalize(lowered)
    for key in HINT_KEYS:
        value = (hints.get(key) or "").strip()
        if key == "email":
            value = value.split("@", 1)[0]
        value = normalize(value)
        if len(value) > 2 and (value in lowered or value in folded):
            return True
    return False


def _contains_sequence(lowered: str) -> bool:
    return any(
        sequence in lowered or sequence[::-1] in lowered
        for sequence in KEYBOARD_SEQUENCES
    )
