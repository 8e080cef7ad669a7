"""
Record validation before storage.

Checks canonical records against field rules and business rules and
returns a sanitized copy. Errors exclude a record from the batch;
warnings are reported but the record still proceeds.

Validations:
- Required fields and length bounds (overflow is truncated with a warning)
- Compensation, duration and work mode ranges
- Application URL format (tracking parameters stripped)
- Posted date vs deadline consistency
- Suspected extraction defects (title == organization, technical title without skills)
"""

import logging
import re
import unicodedata
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from core.normalize import WORK_MODES, normalize_skills

logger = logging.getLogger(__name__)


# field -> (required, min_length, max_length)
FIELD_RULES = {
    'title': (True, 3, 200),
    'organization': (True, 2, 100),
    'description': (False, 0, 5000),
    'location': (False, 0, 200),
    'source': (True, 2, 50),
    'external_id': (True, 1, 255),
    'application_url': (True, 0, 2048),
}

TRACKING_PARAMS = {'fbclid', 'gclid', 'ref', 'referrer', 'source'}

TECHNICAL_TITLE_RE = re.compile(
    r'\b(developer|engineer|engineering|programmer|software|data scientist|data analyst|devops|full[- ]?stack|back[- ]?end|front[- ]?end)\b',
    re.IGNORECASE,
)

HIGH_COMPENSATION = 100000


class ValidationResult:
    """Outcome of validating one record"""

    def __init__(self, errors: List[str], warnings: List[str], sanitized: Dict[str, Any]):
        self.errors = errors
        self.warnings = warnings
        self.sanitized = sanitized

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict:
        return {
            'valid': self.valid,
            'errors': self.errors,
            'warnings': self.warnings,
            'sanitized': self.sanitized,
        }


def sanitize_text(value: Any) -> str:
    """Remove control characters and collapse whitespace."""
    if value is None:
        return ''
    if not isinstance(value, str):
        value = str(value)
    value = ''.join(
        ch if not unicodedata.category(ch).startswith('C') else ' '
        for ch in value
    )
    return re.sub(r'\s+', ' ', value).strip()


def strip_tracking_params(url: str) -> str:
    """Drop utm_* and other tracking query parameters from a URL."""
    parsed = urlparse(url)
    if not parsed.query:
        return url
    kept = [
        (key, value) for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not key.lower().startswith('utm_') and key.lower() not in TRACKING_PARAMS
    ]
    return urlunparse(parsed._replace(query=urlencode(kept)))


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return None


class RecordValidator:
    """
    Validates canonical records.
    """

    VALID_URL_SCHEMES = ('http', 'https')

    def __init__(self, today: Optional[date] = None):
        """
        Args:
            today: Fixed reference date for future-date checks (tests)
        """
        self._today = today

    @property
    def today(self) -> date:
        return self._today or date.today()

    def _check_text_fields(self, record: Dict, sanitized: Dict, errors: List[str], warnings: List[str]):
        for field, (required, min_length, max_length) in FIELD_RULES.items():
            value = sanitize_text(record.get(field))

            if not value:
                if required:
                    errors.append(f"{field} is required")
                sanitized[field] = value
                continue

            if len(value) < min_length:
                errors.append(f"{field} must be at least {min_length} characters")

            if len(value) > max_length:
                warnings.append(f"{field} truncated from {len(value)} to {max_length} characters")
                value = value[:max_length].rstrip()

            sanitized[field] = value

    def _check_url(self, sanitized: Dict, errors: List[str]):
        url = sanitized.get('application_url')
        if not url:
            return

        parsed = urlparse(url)
        if parsed.scheme not in self.VALID_URL_SCHEMES:
            errors.append(f"application_url must use http or https: {url[:50]}")
            return
        if not parsed.netloc:
            errors.append(f"application_url is missing a domain: {url[:50]}")
            return

        sanitized['application_url'] = strip_tracking_params(url)

    def _check_numbers(self, record: Dict, sanitized: Dict, errors: List[str], warnings: List[str]):
        compensation = record.get('compensation')
        if compensation is not None:
            if isinstance(compensation, bool) or not isinstance(compensation, (int, float)):
                errors.append("compensation must be a number")
            elif compensation < 0:
                errors.append("compensation must not be negative")
            elif compensation > HIGH_COMPENSATION:
                warnings.append(f"compensation unusually high: {compensation}")
        sanitized['compensation'] = compensation

        duration = record.get('duration_months')
        if duration is not None:
            if isinstance(duration, bool) or not isinstance(duration, int):
                errors.append("duration_months must be an integer")
            elif not 1 <= duration <= 24:
                errors.append(f"duration_months must be between 1 and 24, got {duration}")
        sanitized['duration_months'] = duration

    def _check_enums(self, record: Dict, sanitized: Dict, errors: List[str]):
        work_mode = record.get('work_mode')
        if work_mode not in WORK_MODES:
            errors.append(f"work_mode must be one of {', '.join(WORK_MODES)}, got {work_mode!r}")
        sanitized['work_mode'] = work_mode

        skills = record.get('skills')
        if skills is None:
            skills = []
        if not isinstance(skills, (list, tuple)) or not all(isinstance(s, str) for s in skills):
            errors.append("skills must be a list of strings")
            sanitized['skills'] = []
        else:
            sanitized['skills'] = normalize_skills(sanitize_text(s) for s in skills)

    def _check_dates(self, record: Dict, sanitized: Dict, errors: List[str], warnings: List[str]):
        posted = record.get('posted_date')
        deadline = record.get('deadline')

        for field, value in (('posted_date', posted), ('deadline', deadline)):
            if value is not None and _as_date(value) is None:
                errors.append(f"{field} must be a date")

        posted = _as_date(posted)
        deadline = _as_date(deadline)
        sanitized['posted_date'] = posted
        sanitized['deadline'] = deadline

        if posted and deadline and posted > deadline:
            errors.append(f"posted_date {posted.isoformat()} is after deadline {deadline.isoformat()}")
        if posted and posted > self.today:
            warnings.append(f"posted_date {posted.isoformat()} is in the future")

    def _check_business_rules(self, sanitized: Dict, warnings: List[str]):
        title = sanitized.get('title', '')
        organization = sanitized.get('organization', '')

        if title and organization and title.lower() == organization.lower():
            warnings.append("title is identical to organization name")

        if re.search(r'\btest\b', title, re.IGNORECASE):
            warnings.append("title looks like a test listing")

        if title and TECHNICAL_TITLE_RE.search(title) and not sanitized.get('skills'):
            warnings.append("technical title has no required skills")

    def validate(self, record: Dict[str, Any]) -> ValidationResult:
        """
        Validate a single canonical record.

        Args:
            record: Canonical record dict

        Returns:
            ValidationResult with errors, warnings and the sanitized copy
        """
        errors: List[str] = []
        warnings: List[str] = []
        sanitized = dict(record)

        self._check_text_fields(record, sanitized, errors, warnings)
        self._check_url(sanitized, errors)
        self._check_numbers(record, sanitized, errors, warnings)
        self._check_enums(record, sanitized, errors)
        self._check_dates(record, sanitized, errors, warnings)
        self._check_business_rules(sanitized, warnings)
        sanitized['is_active'] = bool(record.get('is_active', True))

        return ValidationResult(errors, warnings, sanitized)

    def validate_batch(self, records: List[Dict[str, Any]]) -> Dict:
        """
        Validate multiple records.

        Returns:
            Dict with:
            - valid: sanitized records that passed
            - invalid: list of (record, errors) tuples
            - warnings: all warnings, prefixed with the record's external id
            - stats: total/valid/invalid/warnings counts
        """
        valid = []
        invalid = []
        all_warnings = []

        for record in records:
            result = self.validate(record)
            label = record.get('external_id') or record.get('title') or '?'
            all_warnings.extend(f"{label}: {w}" for w in result.warnings)

            if result.valid:
                valid.append(result.sanitized)
            else:
                invalid.append((record, result.errors))
                logger.debug(f"[validator] Rejected {label}: {'; '.join(result.errors)}")

        return {
            'valid': valid,
            'invalid': invalid,
            'warnings': all_warnings,
            'stats': {
                'total': len(records),
                'valid': len(valid),
                'invalid': len(invalid),
                'warnings': len(all_warnings),
            },
        }
