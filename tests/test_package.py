"""Tests for the Finlytic package metadata."""
import pathlib
import tomllib
import unittest

import Finlytic


class PackageMetadataTests(unittest.TestCase):
    def test_version_matches_pyproject(self):
        path = pathlib.Path(__file__).parent.parent / 'pyproject.toml'
        with path.open('rb') as f:
            project = tomllib.load(f)['project']
        self.assertEqual(Finlytic.__version__, project['version'])
        self.assertNotIn('urls', project)

    def test_no_project_url(self):
        self.assertFalse(hasattr(Finlytic, '__url__'))


if __name__ == '__main__':
    unittest.main()
