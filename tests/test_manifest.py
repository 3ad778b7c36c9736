"""
Test manifest loading, environment handling and validation.
"""

import os

import pytest

from mcp_compose.core.exceptions import ConfigError, NotFoundError, ValidationError
from mcp_compose.core.manifest import (
    apply_env_overrides,
    expand_env,
    load_manifest,
    parse_manifest,
)
from mcp_compose.utils.validators import (
    container_port,
    validate_cpus,
    validate_memory,
    validate_port_mapping,
    validate_server_name,
    validate_volume,
)


class TestExpandEnv:
    """Test ${VAR} expansion."""

    def test_braced_and_bare_references(self):
        env = {"IMAGE": "mcp/echo", "TAG": "1.2"}
        assert expand_env("${IMAGE}:$TAG", env) == "mcp/echo:1.2"

    def test_default_used_when_unset_or_empty(self):
        assert expand_env("${MISSING:-fallback}", {}) == "fallback"
        assert expand_env("${EMPTY:-fallback}", {"EMPTY": ""}) == "fallback"

    def test_unset_without_default_is_empty(self):
        assert expand_env("a${MISSING}b", {}) == "ab"


class TestLoadManifest:
    """Test load_manifest from disk."""

    def test_load_with_defaults(self, manifest_file):
        manifest = load_manifest(manifest_file)

        assert manifest.path == manifest_file.resolve()
        assert manifest.project_name == "mcp-compose"
        echo = manifest.servers["echo"]
        assert echo.image == "mcp/echo:latest"
        assert echo.env["LOG_LEVEL"] == "info"

    def test_environment_overrides_selected_by_mcp_env(self, manifest_file, monkeypatch):
        monkeypatch.setenv("MCP_ENV", "production")
        manifest = load_manifest(manifest_file)
        assert manifest.servers["echo"].env["LOG_LEVEL"] == "warn"

    def test_dotenv_file_is_loaded(self, manifest_file, monkeypatch):
        monkeypatch.delenv("ECHO_IMAGE", raising=False)
        (manifest_file.parent / ".env").write_text("ECHO_IMAGE=registry.local/echo:2\n")
        try:
            manifest = load_manifest(manifest_file)
            assert manifest.servers["echo"].image == "registry.local/echo:2"
        finally:
            os.environ.pop("ECHO_IMAGE", None)

    def test_process_env_wins_over_manifest(self, manifest_file, monkeypatch):
        monkeypatch.setenv("MCP_API_KEY", "secret")
        monkeypatch.setenv("MCP_DASHBOARD_PORT", "4000")
        monkeypatch.setenv("POSTGRES_URL", "postgresql://db/activity")

        manifest = load_manifest(manifest_file)

        assert manifest.proxy_auth.api_key == "secret"
        assert manifest.dashboard.port == 4000
        assert manifest.dashboard.postgres_url == "postgresql://db/activity"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_manifest(tmp_path / "nope.yaml")

    def test_unparsable_yaml(self, tmp_path):
        path = tmp_path / "mcp-compose.yaml"
        path.write_text("servers: [unclosed\n")
        with pytest.raises(ConfigError):
            load_manifest(path)


class TestManifestValidation:
    """Test cross-field manifest rules."""

    def test_sample_manifest_is_valid(self, manifest):
        assert set(manifest.servers) == {"filesystem", "weather", "notes"}
        assert manifest.servers["weather"].inferred_http_port() == 8000

    def test_unsupported_version(self, manifest_data):
        manifest_data["version"] = "2"
        with pytest.raises(ConfigError, match="Unsupported manifest version"):
            parse_manifest(manifest_data)

    def test_unknown_dependency(self, manifest_data):
        manifest_data["servers"]["weather"]["depends_on"] = ["ghost"]
        with pytest.raises(ConfigError, match="unknown server 'ghost'"):
            parse_manifest(manifest_data)

    def test_server_needs_something_to_run(self, manifest_data):
        manifest_data["servers"]["empty"] = {"protocol": "stdio"}
        with pytest.raises(ConfigError, match="command, image or build"):
            parse_manifest(manifest_data)

    def test_http_server_needs_port(self, manifest_data):
        manifest_data["servers"]["web"] = {"image": "web", "protocol": "http"}
        with pytest.raises(ConfigError, match="requires http_port"):
            parse_manifest(manifest_data)

    def test_http_port_inferred_from_mapping(self, manifest_data):
        manifest_data["servers"]["web"] = {"image": "web", "protocol": "sse", "ports": ["9100:9000"]}
        manifest = parse_manifest(manifest_data)
        assert manifest.servers["web"].inferred_http_port() == 9000

    def test_separator_in_name_rejected(self, manifest_data):
        manifest_data["servers"]["../escape"] = {"image": "x"}
        with pytest.raises(ConfigError):
            parse_manifest(manifest_data)

    def test_proxy_auth_requires_key(self, manifest_data):
        manifest_data["proxy_auth"] = {"enabled": True}
        with pytest.raises(ConfigError, match="api_key"):
            parse_manifest(manifest_data)

    def test_retention_must_be_positive(self, manifest_data):
        manifest_data["dashboard"] = {"activity_retention_days": 0}
        with pytest.raises(ConfigError):
            parse_manifest(manifest_data)

    def test_get_server_unknown(self, manifest):
        with pytest.raises(NotFoundError):
            manifest.get_server("ghost")

    def test_env_override_bad_port(self, manifest):
        with pytest.raises(ConfigError):
            apply_env_overrides(manifest, {"MCP_DASHBOARD_PORT": "abc"})


class TestValidators:
    """Test individual validators."""

    @pytest.mark.parametrize("name", ["filesystem", "my-server", "srv_2", "a.b"])
    def test_valid_names(self, name):
        assert validate_server_name(name) is True

    @pytest.mark.parametrize("name", ["", "api", "has space", "a/b", "-leading", "x" * 64])
    def test_invalid_names(self, name):
        with pytest.raises(ValidationError):
            validate_server_name(name)

    @pytest.mark.parametrize("mapping", ["8080", "8080:80", "127.0.0.1:8080:80", "8000-8010:8000-8010", "53:53/udp"])
    def test_valid_port_mappings(self, mapping):
        assert validate_port_mapping(mapping) is True

    @pytest.mark.parametrize("mapping", ["", "0:80", "70000:80", "a:b", "80:80/icmp", "9-1:9-1"])
    def test_invalid_port_mappings(self, mapping):
        with pytest.raises(ValidationError):
            validate_port_mapping(mapping)

    def test_container_port(self):
        assert container_port("8080:80") == 80
        assert container_port("80/tcp") == 80
        assert container_port("8000-8010:8000-8010") is None

    def test_memory_and_cpus(self):
        assert validate_memory("512m") is True
        assert validate_cpus("0.5") is True
        with pytest.raises(ValidationError):
            validate_memory("lots")
        with pytest.raises(ValidationError):
            validate_cpus("0")

    def test_volumes(self):
        assert validate_volume("data:/data:ro") is True
        with pytest.raises(ValidationError):
            validate_volume("data:relative")
        with pytest.raises(ValidationError):
            validate_volume("/only-one-part")
