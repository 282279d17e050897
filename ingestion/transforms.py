import logging
import re
from datetime import date, datetime, time, timedelta
from typing import Optional

from dateutil import parser as date_parser
from django.conf import settings

logger = logging.getLogger(__name__)

EXCEL_EPOCH = date(1899, 12, 30)
MIN_EXCEL_SERIAL = 1000
MAX_EXCEL_SERIAL = 100000

SHORT_YEAR_RE = re.compile(r'^(\d{1,2})[/-](\d{1,2})[/-](\d{2})$')
LONG_YEAR_RE = re.compile(r'^(\d{1,2})[/-](\d{1,2})[/-](\d{4})$')
TIME_RE = re.compile(r'^(\d{1,2}):(\d{2})(?::\d{2})?\s*([AaPp][Mm])?$')
WEEKDAY_PREFIX_RE = re.compile(r'^(monday|tuesday|wednesday|thursday|friday|saturday|sunday),?\s+', re.IGNORECASE)


class TwoDigitYearPolicy:
    """
    Century selection for two-digit birth years.

    - a year above the current two-digit year belongs to the previous century
    - a current-century reading that implies an age above `max_age` belongs
      to the previous century
    - anything that still lands in the future is moved back 100 years
    """

    def __init__(self, max_age=None, today=None):
        self.max_age = settings.INGESTION_TWO_DIGIT_YEAR_MAX_AGE if max_age is None else max_age
        self._today = today

    @property
    def today(self) -> date:
        return self._today or date.today()

    def resolve(self, month: int, day: int, two_digit_year: int) -> Optional[date]:
        today = self.today
        current_two_digit = today.year % 100
        century = today.year - current_two_digit

        if two_digit_year > current_two_digit:
            year = century - 100 + two_digit_year
        else:
            year = century + two_digit_year
            if today.year - year > self.max_age:
                year -= 100

        try:
            result = date(year, month, day)
            if result > today:
                result = date(year - 100, month, day)
        except ValueError:
            return None
        return result


def _is_blank(value):
    return value is None or (isinstance(value, str) and not value.strip())


def _as_number(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(str(value).strip())
    except ValueError:
        return None


# ============================================================================
# TRANSFORMS
# ============================================================================

def transform_text(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def transform_phone(value):
    raw = str(value).strip()
    digits = re.sub(r'\D', '', raw)
    if not digits:
        return ''
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith('1'):
        return f"+{digits}"
    return f"+{digits}"


def transform_short_date(value, policy: TwoDigitYearPolicy):
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    number = _as_number(value)
    if number is not None and MIN_EXCEL_SERIAL < number < MAX_EXCEL_SERIAL:
        return (EXCEL_EPOCH + timedelta(days=int(number))).isoformat()

    text = str(value).strip()
    match = SHORT_YEAR_RE.match(text)
    if match:
        month, day, year = (int(part) for part in match.groups())
        resolved = policy.resolve(month, day, year)
        return resolved.isoformat() if resolved else text

    match = LONG_YEAR_RE.match(text)
    if match:
        month, day, year = (int(part) for part in match.groups())
        try:
            return date(year, month, day).isoformat()
        except ValueError:
            return text

    try:
        return date_parser.parse(text).date().isoformat()
    except (ValueError, OverflowError):
        logger.debug(f"Unparseable date value: {text}")
        return text


def transform_long_date(value):
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = WEEKDAY_PREFIX_RE.sub('', str(value).strip())
    for fmt in ('%B %d, %Y', '%b %d, %Y', '%B %d %Y'):
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    try:
        return date_parser.parse(text).date().isoformat()
    except (ValueError, OverflowError):
        return str(value).strip()


def transform_time(value):
    if isinstance(value, datetime):
        return value.strftime('%H:%M')
    if isinstance(value, time):
        return value.strftime('%H:%M')

    number = _as_number(value)
    if number is not None and 0 <= number < 1:
        minutes = int(round(number * 24 * 60))
        return f"{minutes // 60:02d}:{minutes % 60:02d}"

    text = str(value).strip()
    match = TIME_RE.match(text)
    if not match:
        return text
    hours, minutes, meridiem = int(match.group(1)), int(match.group(2)), match.group(3)
    if meridiem:
        meridiem = meridiem.lower()
        if meridiem == 'pm' and hours < 12:
            hours += 12
        elif meridiem == 'am' and hours == 12:
            hours = 0
    return f"{hours:02d}:{minutes:02d}"


def transform_provider(value):
    words = []
    for word in str(value).strip().split():
        letters = re.sub(r'[^A-Za-z]', '', word)
        if letters and letters.isupper() and len(letters) <= 3:
            words.append(word)
        else:
            words.append(word[:1].upper() + word[1:].lower())
    return ' '.join(words)


def transform_value(value, kind, policy: Optional[TwoDigitYearPolicy] = None):
    """Apply a field transform; blank input always yields ''."""
    if _is_blank(value):
        return ''
    if kind == 'phone':
        return transform_phone(value)
    if kind == 'short_date':
        return transform_short_date(value, policy or TwoDigitYearPolicy())
    if kind == 'long_date':
        return transform_long_date(value)
    if kind == 'time':
        return transform_time(value)
    if kind == 'provider':
        return transform_provider(value)
    return transform_text(value)
