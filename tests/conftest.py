"""
tests/conftest.py - shared pytest fixtures

FakeLister stands in for GcloudLister/ApiLister with canned listings.
"""

import pytest

import resource_count_gcp


class FakeLister:
    """Return canned listings per (project, resource type); None means the query failed"""

    def __init__(self, projects=None, listings=None):
        self._projects = projects or []
        self.listings = listings or {}
        self.calls = []
        self.errors = []

    def projects(self):
        return list(self._projects)

    def _listing(self, key, project_id):
        self.calls.append((project_id, key))
        return self.listings.get((project_id, key), [])

    def __getattr__(self, key):
        if key in resource_count_gcp.resource_types:
            return lambda project_id: self._listing(key, project_id)
        raise AttributeError(key)


def _records(count):
    """A listing of count records with name fields"""
    return [{"name": f"resource-{index}"} for index in range(count)]


@pytest.fixture
def make_records():
    return _records


@pytest.fixture
def fake_lister():
    return FakeLister


@pytest.fixture
def counters():
    return resource_count_gcp.Counters()
