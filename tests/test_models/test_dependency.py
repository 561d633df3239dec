"""Tests for the Dependency model."""

import pytest
from pydantic import ValidationError

from vulnrank.models.dependency import Dependency, dependency_key


class TestDependencyModel:
    """Dependency identity, defaults and immutability."""

    def _make_dependency(self, **overrides):
        defaults = {"name": "lodash", "version": "4.17.20", "ecosystem": "npm"}
        defaults.update(overrides)
        return Dependency(**defaults)

    def test_key_joins_ecosystem_name_and_version(self):
        dep = self._make_dependency()
        assert dep.key == "npm:lodash@4.17.20"
        assert dep.key == dependency_key("npm", "lodash", "4.17.20")

    def test_versions_give_distinct_keys(self):
        assert self._make_dependency().key != self._make_dependency(version="4.17.21").key

    def test_defaults_to_transitive(self):
        dep = self._make_dependency()
        assert dep.is_direct is False
        assert dep.parent is None

    def test_is_frozen(self):
        dep = self._make_dependency()
        with pytest.raises(ValidationError):
            dep.version = "5.0.0"

    def test_missing_ecosystem_rejected(self):
        with pytest.raises(ValidationError):
            Dependency(name="lodash", version="4.17.20")
