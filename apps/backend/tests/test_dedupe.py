"""
Unit tests for core/dedupe.py
"""

import pytest
from core.dedupe import deduplicate, find_near_duplicates, jaccard, similarity


def _record(external_id, title, organization='Acme Labs', location='Pune', description=''):
    return {
        'source': 'internshala',
        'external_id': external_id,
        'title': title,
        'organization': organization,
        'location': location,
        'description': description,
    }


class TestDeduplicate:
    def test_case_insensitive_key_first_wins(self):
        """Test records sharing (title, organization, location) collapse to the first."""
        records = [
            _record('a', 'Web Developer'),
            _record('b', 'web developer ', organization='ACME LABS', location='pune'),
            _record('c', 'Web Developer', location='Delhi'),
        ]
        result = deduplicate(records)

        assert [r['external_id'] for r in result.unique] == ['a', 'c']
        assert [r['external_id'] for r in result.duplicates] == ['b']
        assert result.to_dict() == {'unique': 2, 'duplicates': 1}

    def test_empty(self):
        result = deduplicate([])
        assert result.unique == []
        assert result.duplicates == []


class TestSimilarity:
    def test_jaccard(self):
        assert jaccard({'a', 'b'}, {'b', 'c'}) == pytest.approx(1 / 3)
        assert jaccard(set(), set()) == 1.0

    def test_identical_records_score_one(self):
        a = _record('a', 'Web Developer', description='Build pages')
        assert similarity(a, dict(a)) == pytest.approx(1.0)

    def test_weighted_and_normalized(self):
        """Test missing description is left out of the weighting."""
        a = _record('a', 'Web Developer Intern')
        b = _record('b', 'Web Developer')
        expected = (0.4 * (2 / 3) + 0.3 + 0.2) / 0.9
        assert similarity(a, b) == pytest.approx(expected)

    def test_find_near_duplicates_reports_only(self):
        """Test near duplicates are reported and exact-key pairs skipped."""
        records = [
            _record('a', 'Web Developer Intern'),
            _record('b', 'Web Developer'),
            _record('c', 'Accountant', organization='Globex', location='Chennai'),
            _record('d', 'Web Developer'),
        ]
        pairs = find_near_duplicates(records, min_score=0.6)

        keys = {(p['left'][1], p['right'][1]) for p in pairs}
        assert ('a', 'b') in keys
        assert ('a', 'd') in keys
        assert ('b', 'd') not in keys
        assert all(p['score'] >= 0.6 for p in pairs)
        assert len(records) == 4
