"""
Domain validation and normalization module.

Normalizes domain names to the canonical form under which they are stored
and monitored: lowercase, IDNA-encoded, no trailing dot.
"""

import re
from dataclasses import dataclass
from typing import Optional

import idna

from .enums import DomainValidationErrorCode
from .exceptions import ValidationError

# Control chars, whitespace and symbols that never appear in a hostname
FORBIDDEN_CHARS_PATTERN = re.compile(
    r'[\x00-\x1f\x7f'
    r'\s'
    r'!@#$%^&*()+=\[\]{}|\\:;"\'<>,?/`~]'
)


@dataclass
class DomainValidationResult:
    """Result of domain validation operation."""

    valid: bool
    canonical_domain: Optional[str]
    error: Optional[ValidationError]


class DomainValidator:
    """
    Validates and normalizes domain names before they are monitored.

    An optional TLD allow-list restricts which registries may be monitored;
    without one every syntactically valid name is accepted.
    """

    def __init__(self, allowed_tlds: Optional[list[str]] = None) -> None:
        self._allowed_tlds = (
            {tld.lower().lstrip(".") for tld in allowed_tlds} if allowed_tlds else None
        )

    def validate(self, raw_domain: str) -> DomainValidationResult:
        """
        Validate and normalize a domain string.

        Args:
            raw_domain: The raw domain string to validate

        Returns:
            DomainValidationResult with the canonical form or the error
        """
        if not raw_domain or not raw_domain.strip():
            return self._invalid(
                DomainValidationErrorCode.EMPTY_INPUT,
                "Domain input is empty",
                {"raw_input": raw_domain},
            )

        domain = raw_domain.strip().rstrip(".")

        forbidden = FORBIDDEN_CHARS_PATTERN.findall(domain)
        if forbidden:
            return self._invalid(
                DomainValidationErrorCode.FORBIDDEN_CHARS,
                "Domain contains forbidden characters",
                {"raw_input": raw_domain, "forbidden_chars": forbidden},
            )

        try:
            canonical = self.normalize_to_canonical(domain)
        except ValidationError as e:
            return DomainValidationResult(valid=False, canonical_domain=None, error=e)

        tld = self._extract_tld(canonical)
        if not tld:
            return self._invalid(
                DomainValidationErrorCode.INVALID_TLD,
                "Could not extract TLD from domain",
                {"raw_input": raw_domain, "canonical": canonical},
            )

        if self._allowed_tlds is not None and tld not in self._allowed_tlds:
            return self._invalid(
                DomainValidationErrorCode.INVALID_TLD,
                f"TLD '{tld}' is not in the configured allowed list",
                {"raw_input": raw_domain, "tld": tld},
            )

        return DomainValidationResult(valid=True, canonical_domain=canonical, error=None)

    def normalize_to_canonical(self, domain: str) -> str:
        """
        Convert domain to canonical form (lowercase, IDNA-encoded).

        Raises:
            ValidationError: If IDNA encoding fails
        """
        domain_lower = domain.lower()
        if all(ord(c) < 128 for c in domain_lower):
            return domain_lower

        try:
            return idna.encode(domain_lower, uts46=True).decode("ascii")
        except idna.IDNAError as e:
            raise ValidationError(
                code=DomainValidationErrorCode.IDNA_ERROR.value,
                message=f"IDNA encoding failed: {e}",
                details={"domain": domain, "idna_error": str(e)},
            )

    def _extract_tld(self, domain: str) -> Optional[str]:
        if "." not in domain:
            return None
        sld, tld = domain.rsplit(".", 1)
        if not sld or not tld:
            return None
        return tld

    @staticmethod
    def _invalid(
        code: DomainValidationErrorCode, message: str, details: dict
    ) -> DomainValidationResult:
        return DomainValidationResult(
            valid=False,
            canonical_domain=None,
            error=ValidationError(code=code.value, message=message, details=details),
        )
