"""
Unit tests for core/normalize.py

Tests key normalization functions including:
- Whitespace and location cleanup
- Compensation parsing
- Duration parsing
- Relative and absolute date parsing
- Skill aliasing and dedupe
- Work mode classification
- Per-source entry points
"""

from datetime import date

import pytest
from core.normalize import (
    classify_work_mode,
    clean_text,
    get_normalizer,
    normalize_internshala,
    normalize_linkedin,
    normalize_location,
    normalize_skills,
    parse_compensation,
    parse_date,
    parse_duration,
)

TODAY = date(2024, 6, 15)


class TestTextCleanup:
    def test_clean_text_collapses_whitespace(self):
        """Test CR/LF/TAB runs collapse to single spaces."""
        assert clean_text("  Web\r\n\tDevelopment   Intern ") == "Web Development Intern"

    def test_clean_text_none(self):
        assert clean_text(None) == ""

    def test_normalize_location_remote_phrases(self):
        """Test remote phrases map to 'Remote'."""
        assert normalize_location("Work From Home") == "Remote"
        assert normalize_location("remote") == "Remote"

    def test_normalize_location_strips_label_and_parenthetical(self):
        assert normalize_location("Location: Bangalore (Karnataka)") == "Bangalore"


class TestCompensationParsing:
    def test_currency_with_thousands_separator(self):
        """Test '₹20,000 /month' parses to 20000."""
        assert parse_compensation("₹20,000 /month") == 20000

    def test_indian_digit_grouping(self):
        assert parse_compensation("₹ 1,00,000 lump sum") == 100000

    def test_k_suffix(self):
        assert parse_compensation("15k") == 15000

    def test_range_takes_lower_bound(self):
        """Test ranges resolve to the lower bound."""
        assert parse_compensation("10k-15k") == 10000
        assert parse_compensation("₹ 8,000 - 12,000 /month") == 8000

    def test_unpaid(self):
        assert parse_compensation("Unpaid") == 0
        assert parse_compensation("No stipend") == 0

    def test_unparseable(self):
        """Test text without numbers returns None."""
        assert parse_compensation("Performance based") is None
        assert parse_compensation("") is None
        assert parse_compensation(None) is None

    def test_numbers_pass_through(self):
        assert parse_compensation(12000) == 12000


class TestDurationParsing:
    def test_months(self):
        assert parse_duration("3 Months") == 3
        assert parse_duration("6-month") == 6

    def test_weeks_round_half_up(self):
        """Test weeks convert at 4.33 weeks per month."""
        assert parse_duration("2 weeks") == 0
        assert parse_duration("3 weeks") == 1
        assert parse_duration("8 weeks") == 2

    def test_years(self):
        assert parse_duration("1 year") == 12

    def test_phrases(self):
        """Test literal phrases."""
        assert parse_duration("Six Months") == 6
        assert parse_duration("one month") == 1
        assert parse_duration("a year") == 12

    def test_unknown(self):
        assert parse_duration("flexible") is None
        assert parse_duration(None) is None


class TestDateParsing:
    def test_today_and_yesterday(self):
        assert parse_date("Today", today=TODAY) == TODAY
        assert parse_date("Yesterday", today=TODAY) == date(2024, 6, 14)

    def test_hours_ago_is_today(self):
        assert parse_date("Just now", today=TODAY) == TODAY
        assert parse_date("5 hours ago", today=TODAY) == TODAY

    def test_relative_days_weeks_months(self):
        """Test N days/weeks/months ago."""
        assert parse_date("3 days ago", today=TODAY) == date(2024, 6, 12)
        assert parse_date("2 weeks ago", today=TODAY) == date(2024, 6, 1)
        assert parse_date("1 month ago", today=TODAY) == date(2024, 5, 16)

    def test_open_ended_relative(self):
        """Test "30+ days ago" style counts are read as relative, not as a day of month."""
        assert parse_date("30+ days ago", today=TODAY) == date(2024, 5, 16)
        assert parse_date("Posted 30+ days ago", today=TODAY) == date(2024, 5, 16)
        assert parse_date("2+ weeks ago", today=TODAY) == date(2024, 6, 1)
        assert parse_date("24+ hours ago", today=TODAY) == TODAY

    def test_absolute_with_prefix(self):
        """Test labels like 'Apply by' are stripped before parsing."""
        assert parse_date("Apply by 15 Jul 2024", today=TODAY) == date(2024, 7, 15)
        assert parse_date("Posted on 2024-05-01", today=TODAY) == date(2024, 5, 1)

    def test_epoch_millis(self):
        assert parse_date(1718409600000) == date(2024, 6, 15)

    def test_unparseable(self):
        assert parse_date("", today=TODAY) is None
        assert parse_date(None, today=TODAY) is None


class TestSkills:
    def test_aliases(self):
        """Test alias table lookups."""
        assert normalize_skills(["js", "k8s", "reactjs"]) == ["JavaScript", "Kubernetes", "React"]

    def test_title_case_fallback(self):
        assert normalize_skills(["content writing"]) == ["Content Writing"]

    def test_case_insensitive_dedupe_keeps_first(self):
        assert normalize_skills(["Python", "python", "PY", "SQL"]) == ["Python", "SQL"]

    def test_comma_separated_string(self):
        assert normalize_skills("HTML, css ,  ") == ["HTML", "CSS"]


class TestWorkMode:
    def test_hybrid_wins(self):
        assert classify_work_mode("Remote (Hybrid)") == "hybrid"

    def test_remote_markers(self):
        assert classify_work_mode("Work From Home") == "remote"
        assert classify_work_mode(["REMOTE"], "Pune") == "remote"

    def test_default_office(self):
        assert classify_work_mode("Mumbai") == "office"
        assert classify_work_mode(None) == "office"


class TestSourceNormalizers:
    def test_normalize_internshala(self):
        """Test a full Internshala card maps to the canonical shape."""
        raw = {
            'title': ' Web Development ',
            'company': 'Acme Labs',
            'location': 'Work From Home',
            'duration': '3 Months',
            'stipend': '₹ 10,000 /month',
            'posted': None,
            'deadline': None,
            'description': '',
            'skills': ['js', 'HTML'],
            'url': 'https://internshala.com/internship/detail/web-dev-at-acme123',
            'external_id': 'web-dev-at-acme123',
        }
        record = normalize_internshala(raw)

        assert record['title'] == 'Web Development'
        assert record['organization'] == 'Acme Labs'
        assert record['location'] == 'Remote'
        assert record['work_mode'] == 'remote'
        assert record['compensation'] == 10000
        assert record['duration_months'] == 3
        assert record['skills'] == ['JavaScript', 'HTML']
        assert record['source'] == 'internshala'
        assert record['external_id'] == 'web-dev-at-acme123'
        assert record['is_active'] is True

    def test_normalize_linkedin_uses_salary_and_workplace_types(self):
        raw = {
            'title': 'Data Analyst Intern',
            'company': 'Globex',
            'location': 'Bengaluru, Karnataka, India',
            'workplace_types': ['HYBRID'],
            'salary': '25k',
            'url': 'https://www.linkedin.com/jobs/view/123',
            'external_id': 'linkedin-123',
        }
        record = normalize_linkedin(raw)

        assert record['work_mode'] == 'hybrid'
        assert record['compensation'] == 25000
        assert record['duration_months'] is None
        assert record['source'] == 'linkedin'

    def test_get_normalizer(self):
        assert get_normalizer('internshala') is normalize_internshala
        with pytest.raises(KeyError):
            get_normalizer('unknown')
