"""Tests for the environment listing rows."""

from conftest import load_script

listing = load_script("list-environments", "list_environments")

ENVS = [
    {"id": "b", "display_name": "beta", "type": "Sandbox", "region": "europe",
     "instance_url": "https://beta.crm4.dynamics.com", "flow_api_base": ""},
    {"id": "n", "display_name": "", "type": "Developer", "region": "", "instance_url": "", "flow_api_base": ""},
    {"id": "a", "display_name": "Alpha", "type": "Production", "region": "europe",
     "instance_url": "https://alpha.crm4.dynamics.com", "flow_api_base": ""},
]


class TestEnvironmentRows:
    def test_sorted_case_insensitively(self):
        assert [r["id"] for r in listing.environment_rows(ENVS)] == ["n", "a", "b"]

    def test_missing_display_name_sorts_first(self):
        envs = ENVS + [{"id": "z", "display_name": None}]
        rows = listing.environment_rows(envs)
        assert rows[0]["id"] in ("n", "z")
        assert next(r for r in rows if r["id"] == "z")["display_name"] == ""

    def test_dataverse_only(self):
        assert [r["id"] for r in listing.environment_rows(ENVS, dataverse_only=True)] == ["a", "b"]

    def test_columns(self):
        assert list(listing.environment_rows(ENVS)[0]) == ["id", "display_name", "type", "region", "instance_url"]
