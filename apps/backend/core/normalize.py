"""
Normalization of raw listing records into the canonical record shape.

Every function here is pure:
- Whitespace cleanup
- Compensation parsing ("15k", "₹20,000", ranges, "Unpaid")
- Duration parsing to months
- Relative and absolute date parsing
- Skill canonicalization through a fixed alias table
- Work mode classification

Each source gets one entry point (normalize_internshala, normalize_linkedin)
looked up through get_normalizer().
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from dateutil import parser as date_parser


WORK_MODES = ('office', 'remote', 'hybrid')

UNPAID_MARKERS = ('unpaid', 'no stipend', 'without stipend')

REMOTE_MARKERS = ('remote', 'work from home', 'wfh', 'anywhere')

# Fixed alias table: lowercased alias -> canonical skill name
SKILL_ALIASES = {
    'js': 'JavaScript',
    'javascript': 'JavaScript',
    'ts': 'TypeScript',
    'typescript': 'TypeScript',
    'py': 'Python',
    'python': 'Python',
    'java': 'Java',
    'c++': 'C++',
    'cpp': 'C++',
    'c#': 'C#',
    'csharp': 'C#',
    'html': 'HTML',
    'html5': 'HTML',
    'css': 'CSS',
    'css3': 'CSS',
    'react': 'React',
    'reactjs': 'React',
    'react.js': 'React',
    'angular': 'Angular',
    'angularjs': 'Angular',
    'vue': 'Vue.js',
    'vuejs': 'Vue.js',
    'vue.js': 'Vue.js',
    'node': 'Node.js',
    'nodejs': 'Node.js',
    'node.js': 'Node.js',
    'express': 'Express.js',
    'expressjs': 'Express.js',
    'express.js': 'Express.js',
    'mongodb': 'MongoDB',
    'mongo': 'MongoDB',
    'mysql': 'MySQL',
    'postgresql': 'PostgreSQL',
    'postgres': 'PostgreSQL',
    'sql': 'SQL',
    'git': 'Git',
    'github': 'GitHub',
    'aws': 'AWS',
    'gcp': 'Google Cloud',
    'docker': 'Docker',
    'kubernetes': 'Kubernetes',
    'k8s': 'Kubernetes',
    'ml': 'Machine Learning',
    'machine learning': 'Machine Learning',
    'ai': 'Artificial Intelligence',
    'nlp': 'Natural Language Processing',
    'ui/ux': 'UI/UX Design',
    'ms excel': 'MS-Excel',
    'ms-excel': 'MS-Excel',
    'excel': 'MS-Excel',
}

# Literal duration phrases checked before numeric patterns
DURATION_PHRASES = {
    'one month': 1,
    'a month': 1,
    'two months': 2,
    'three months': 3,
    'four months': 4,
    'six months': 6,
    'half a year': 6,
    'one year': 12,
    'a year': 12,
}

WEEKS_PER_MONTH = 4.33

_WHITESPACE_RE = re.compile(r'\s+')
_RANGE_RE = re.compile(
    r'(\d+(?:\.\d+)?)\s*(k)?(?![a-z])\s*(?:-|–|to)\s*(\d+(?:\.\d+)?)\s*(k)?(?![a-z])'
)
_AMOUNT_RE = re.compile(r'(\d+(?:\.\d+)?)\s*(k)?(?![a-z])')
_THOUSANDS_RE = re.compile(r'(?<=\d),(?=\d{2,3}\b)')
_DATE_PREFIX_RE = re.compile(
    r'^(?:apply\s+by|apply\s+before|posted\s+on|posted|deadline|starts?\s+on|last\s+date)\s*[:\-]?\s*',
    re.IGNORECASE,
)


def clean_text(text: Optional[Any]) -> str:
    """Trim and collapse all whitespace (including CR, LF and tabs) to single spaces."""
    if text is None:
        return ''
    if not isinstance(text, str):
        text = str(text)
    return _WHITESPACE_RE.sub(' ', text).strip()


def normalize_location(location: Optional[str]) -> str:
    """
    Clean a location string.

    "Work From Home" and "Remote" become "Remote"; a leading "Location:" label
    and a trailing parenthetical are removed.
    """
    cleaned = clean_text(location)
    if not cleaned:
        return ''

    lowered = cleaned.lower()
    if any(marker in lowered for marker in ('work from home', 'wfh')) or lowered == 'remote':
        return 'Remote'

    cleaned = re.sub(r'^location\s*:\s*', '', cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r'\s*\([^)]*\)\s*$', '', cleaned)
    return cleaned.strip()


def parse_compensation(text: Optional[Any]) -> Optional[int]:
    """
    Parse free-text compensation into an integer amount.

    Examples:
        "₹20,000 /month" -> 20000
        "15k" -> 15000
        "10k-15k" -> 10000 (lower bound)
        "Unpaid" -> 0
        "Performance based" -> None

    Args:
        text: Raw compensation text (numbers pass through)

    Returns:
        Amount as int, or None if nothing parseable
    """
    if isinstance(text, bool):
        return None
    if isinstance(text, (int, float)):
        return int(round(text)) if text >= 0 else None
    if not text or not isinstance(text, str):
        return None

    lowered = clean_text(text).lower()
    if not lowered:
        return None
    if any(marker in lowered for marker in UNPAID_MARKERS):
        return 0

    cleaned = _THOUSANDS_RE.sub('', lowered)

    range_match = _RANGE_RE.search(cleaned)
    if range_match:
        amount = float(range_match.group(1))
        if range_match.group(2) or range_match.group(4):
            amount *= 1000
        return int(round(amount))

    amount_match = _AMOUNT_RE.search(cleaned)
    if not amount_match:
        return None
    amount = float(amount_match.group(1))
    if amount_match.group(2):
        amount *= 1000
    return int(round(amount))


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


def parse_duration(text: Optional[Any]) -> Optional[int]:
    """
    Parse free-text duration into whole months.

    Examples:
        "3 Months" -> 3
        "2 weeks" -> 0 (2 / 4.33 rounds down)
        "6-month" -> 6
        "1 year" -> 12

    Returns:
        Months as int, or None
    """
    if isinstance(text, bool):
        return None
    if isinstance(text, int):
        return text
    if not text or not isinstance(text, str):
        return None

    normalized = clean_text(text).lower()

    for phrase, months in DURATION_PHRASES.items():
        if phrase in normalized:
            return months

    month_match = re.search(r'(\d+)\s*-?\s*months?\b', normalized)
    if month_match:
        return int(month_match.group(1))

    week_match = re.search(r'(\d+)\s*-?\s*weeks?\b', normalized)
    if week_match:
        return _round_half_up(int(week_match.group(1)) / WEEKS_PER_MONTH)

    year_match = re.search(r'(\d+)\s*-?\s*(?:years?|yrs?)\b', normalized)
    if year_match:
        return int(year_match.group(1)) * 12

    return None


def parse_date(value: Optional[Any], today: Optional[date] = None) -> Optional[date]:
    """
    Parse relative or absolute date text.

    Supports "today", "yesterday", "just now", "N hours ago", "N days ago",
    "N weeks ago", "N months ago" (also "30+ days ago"), epoch milliseconds, and anything dateutil
    can read once labels like "Apply by" are stripped.

    Args:
        value: Raw date text, epoch millis, or date/datetime
        today: Reference date for relative phrases (defaults to today)

    Returns:
        date or None
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc).date()
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None

    text = clean_text(value).lower()
    if not text:
        return None

    today = today or date.today()

    if re.search(r'\b(?:today|just now)\b', text) or re.search(r'\b(?:\d+\+?|few)\s*(?:hours?|hrs?|minutes?|mins?)\s+ago\b', text):
        return today
    if re.search(r'\byesterday\b', text):
        return today - timedelta(days=1)

    relative = re.search(r'\b(\d+)\+?\s*(day|week|month)s?\s+ago\b', text)
    if relative:
        amount = int(relative.group(1))
        unit = relative.group(2)
        if unit == 'day':
            return today - timedelta(days=amount)
        if unit == 'week':
            return today - timedelta(weeks=amount)
        return today - timedelta(days=30 * amount)

    stripped = _DATE_PREFIX_RE.sub('', clean_text(value))
    # Internshala writes years as 25 Dec' 24
    stripped = stripped.replace("'", ' ')
    default = datetime(today.year, today.month, today.day)
    try:
        return date_parser.parse(stripped, default=default, fuzzy=True).date()
    except (ValueError, OverflowError):
        return None


def canonical_skill(skill: Optional[str]) -> Optional[str]:
    """Map a skill name through the alias table, else capitalize each word."""
    if not skill or not isinstance(skill, str):
        return None

    cleaned = clean_text(skill)
    if not cleaned:
        return None

    alias = SKILL_ALIASES.get(cleaned.lower())
    if alias:
        return alias
    return ' '.join(word[:1].upper() + word[1:] for word in cleaned.split(' '))


def normalize_skills(skills: Optional[Iterable[Any]]) -> List[str]:
    """
    Canonicalize and dedupe a skill list.

    Accepts a list or a comma-separated string. Order of first appearance
    is kept; duplicates compare case-insensitively.
    """
    if not skills:
        return []
    if isinstance(skills, str):
        skills = skills.split(',')

    seen = set()
    normalized = []
    for skill in skills:
        canonical = canonical_skill(skill if isinstance(skill, str) else None)
        if not canonical:
            continue
        key = canonical.lower()
        if key in seen:
            continue
        seen.add(key)
        normalized.append(canonical)
    return normalized


def classify_work_mode(*texts: Optional[Any]) -> str:
    """
    Classify work mode from location and workplace-type text.

    "hybrid" anywhere wins, then remote markers, else "office".
    """
    parts = []
    for text in texts:
        if not text:
            continue
        if isinstance(text, (list, tuple, set)):
            parts.extend(str(t) for t in text if t)
        else:
            parts.append(str(text))
    combined = ' '.join(parts).lower()

    if 'hybrid' in combined:
        return 'hybrid'
    if any(marker in combined for marker in REMOTE_MARKERS):
        return 'remote'
    return 'office'


def _base_record(source: str, raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'title': clean_text(raw.get('title')),
        'organization': clean_text(raw.get('company')),
        'description': clean_text(raw.get('description')),
        'location': normalize_location(raw.get('location')),
        'compensation': parse_compensation(raw.get('stipend')),
        'duration_months': parse_duration(raw.get('duration')),
        'work_mode': 'office',
        'skills': normalize_skills(raw.get('skills')),
        'application_url': clean_text(raw.get('url')),
        'source': source,
        'external_id': clean_text(raw.get('external_id')),
        'posted_date': parse_date(raw.get('posted')),
        'deadline': parse_date(raw.get('deadline')),
        'is_active': True,
    }


def normalize_internshala(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a raw Internshala listing card."""
    record = _base_record('internshala', raw)
    record['work_mode'] = classify_work_mode(raw.get('location'), raw.get('work_type'))
    return record


def normalize_linkedin(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize a raw LinkedIn listing from either the API or the HTML path.

    LinkedIn usually has no stipend or duration; salary text is used when
    present.
    """
    if raw.get('stipend') is None and raw.get('salary'):
        raw = dict(raw, stipend=raw.get('salary'))
    record = _base_record('linkedin', raw)
    record['work_mode'] = classify_work_mode(raw.get('workplace_types'), raw.get('location'))
    return record


NORMALIZERS: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    'internshala': normalize_internshala,
    'linkedin': normalize_linkedin,
}


def get_normalizer(source: str) -> Callable[[Dict[str, Any]], Dict[str, Any]]:
    """Look up the normalizer for a source. Raises KeyError if unknown."""
    try:
        return NORMALIZERS[source]
    except KeyError:
        raise KeyError(f"No normalizer registered for source '{source}'")
