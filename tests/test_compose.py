"""
Test compose orchestration against the in-memory runtime.
"""

from typing import List

import pytest

from mcp_compose.core.activity.bus import ActivityPublisher
from mcp_compose.core.compose import ComposeOrchestrator, HookError
from mcp_compose.core.exceptions import ConfigError, EngineError, NotFoundError
from mcp_compose.core.manifest import parse_manifest
from mcp_compose.core.models import ActivityEvent, WorkloadStatus
from mcp_compose.core.process import ProcessSupervisor


class RecordingPublisher(ActivityPublisher):
    def __init__(self):
        self.events: List[ActivityEvent] = []

    def publish(self, event: ActivityEvent) -> None:
        self.events.append(event)


class TestContainerOptions:
    """Test manifest server to runtime options conversion."""

    def test_defaults_applied(self, manifest, runtime):
        orchestrator = ComposeOrchestrator(manifest, runtime)
        options = orchestrator.to_container_options("filesystem", manifest.servers["filesystem"])

        assert options.name == "mcp-compose-filesystem"
        assert options.image == "mcp/filesystem:latest"
        assert options.command == "node"
        assert options.args == ["/app/index.js", "/data"]
        assert options.env["MCP_SERVER_NAME"] == "filesystem"
        assert "no-new-privileges:true" in options.security_opt
        assert options.labels["mcp-compose.server"] == "filesystem"
        assert options.labels["mcp-compose.project"] == "mcp-compose"
        assert options.networks == ["mcp-net"]
        assert options.volumes == ["fs-data:/data"]

    def test_resources_and_security(self, manifest_data, runtime, tmp_path):
        manifest_data["servers"]["filesystem"].update({
            "deploy": {"resources": {"limits": {"cpus": 0.5, "memory": "256m", "pids": 64}}},
            "security": {"allow_host_mounts": ["/etc"], "no_new_privileges": False},
            "networks": ["backend", "frontend"],
            "volumes": ["./data:/data"],
        })
        manifest = parse_manifest(manifest_data)
        manifest.path = tmp_path / "mcp-compose.yaml"
        orchestrator = ComposeOrchestrator(manifest, runtime)

        options = orchestrator.to_container_options("filesystem", manifest.servers["filesystem"])

        assert options.cpus == "0.5"
        assert options.memory == "256m"
        assert options.pids_limit == 64
        assert options.security.allow_host_mounts == ["/etc"]
        assert "no-new-privileges:true" not in options.security_opt
        assert options.primary_network() == "backend"
        assert options.additional_networks() == ["frontend"]
        assert options.volumes == [f"{(tmp_path / 'data').resolve()}:/data"]


class TestDependencies:
    """Test start ordering."""

    def test_levels(self, manifest, runtime):
        orchestrator = ComposeOrchestrator(manifest, runtime)
        assert orchestrator.dependency_levels(["notes", "weather", "filesystem"]) == [
            ["filesystem"], ["weather"], ["notes"],
        ]

    def test_servers_to_start_pulls_dependencies(self, manifest, runtime):
        orchestrator = ComposeOrchestrator(manifest, runtime)
        assert set(orchestrator.servers_to_start(["notes"])) == {"notes", "weather", "filesystem"}
        assert orchestrator.servers_to_start(["filesystem"]) == ["filesystem"]

    def test_cycle_reported_as_final_level(self, manifest_data, runtime):
        manifest_data["servers"]["filesystem"]["depends_on"] = ["notes"]
        orchestrator = ComposeOrchestrator(parse_manifest(manifest_data), runtime)

        levels = orchestrator.dependency_levels(["filesystem", "weather", "notes"])

        assert levels == [["filesystem", "weather", "notes"]]

    def test_require(self, manifest, runtime):
        orchestrator = ComposeOrchestrator(manifest, runtime)
        with pytest.raises(ConfigError):
            orchestrator._require([])
        with pytest.raises(NotFoundError):
            orchestrator._require(["ghost"])


class TestLifecycle:
    """Test up, down and single-server operations."""

    @pytest.fixture(autouse=True)
    def _setup(self, manifest, runtime):
        self.runtime = runtime
        self.publisher = RecordingPublisher()
        self.orchestrator = ComposeOrchestrator(manifest, runtime, self.publisher)

    @pytest.mark.asyncio
    async def test_up_starts_in_dependency_order(self):
        started = await self.orchestrator.up()

        assert started == ["filesystem", "weather", "notes"]
        assert [o.name for o in self.runtime.started] == [
            "mcp-compose-filesystem", "mcp-compose-weather", "mcp-compose-notes",
        ]
        assert "mcp-net" in self.runtime.networks
        messages = [e.message for e in self.publisher.events]
        assert "Network 'mcp-net' created" in messages
        assert "Server 'notes' started" in messages

    @pytest.mark.asyncio
    async def test_up_is_idempotent(self):
        await self.orchestrator.up()
        await self.orchestrator.up()
        assert len(self.runtime.started) == 3

    @pytest.mark.asyncio
    async def test_up_failure_keeps_earlier_levels(self):
        self.runtime.fail_start["mcp-compose-weather"] = "image not found"

        with pytest.raises(EngineError) as exc_info:
            await self.orchestrator.up()

        assert exc_info.value.kind == "start-failed"
        assert "weather" in exc_info.value.message
        assert await self.orchestrator.status("filesystem") == WorkloadStatus.RUNNING
        assert await self.orchestrator.status("notes") == WorkloadStatus.STOPPED
        assert self.publisher.events[-1].level == "ERROR"

    @pytest.mark.asyncio
    async def test_down_reverse_order(self):
        await self.orchestrator.up()
        warnings = await self.orchestrator.down()

        assert warnings == []
        assert self.runtime.stopped == ["mcp-compose-notes", "mcp-compose-weather", "mcp-compose-filesystem"]

    @pytest.mark.asyncio
    async def test_stop_not_running_is_noop(self):
        await self.orchestrator.stop(["weather"])
        assert self.runtime.stopped == []

    @pytest.mark.asyncio
    async def test_restart(self):
        await self.orchestrator.start(["filesystem"])
        await self.orchestrator.restart(["filesystem"])
        assert self.runtime.stopped == ["mcp-compose-filesystem"]
        assert len(self.runtime.started) == 2

    @pytest.mark.asyncio
    async def test_list_servers(self):
        await self.orchestrator.start(["weather"])
        rows = {row.name: row for row in await self.orchestrator.list_servers()}

        assert rows["weather"].status == "running"
        assert rows["weather"].container_id == "mcp-compose-"
        assert rows["weather"].capabilities == "tools"
        assert rows["notes"].status == "stopped"
        assert rows["notes"].container_id == "-"
        assert rows["notes"].capabilities == "-"
        assert rows["filesystem"].type == "container"

    @pytest.mark.asyncio
    async def test_read_logs(self):
        await self.orchestrator.start(["weather"])
        self.runtime.log_text["mcp-compose-weather"] = "a\nb\nc"
        assert await self.orchestrator.read_logs("weather", tail=2) == "b\nc"

    @pytest.mark.asyncio
    async def test_status_unknown_on_engine_error(self):
        async def broken(name):
            raise EngineError("inspect-failed", "daemon unavailable")

        self.runtime.status = broken
        assert await self.orchestrator.status("weather") == WorkloadStatus.UNKNOWN


class TestReload:
    """Test convergence onto a changed manifest."""

    @pytest.mark.asyncio
    async def test_reload_converges(self, manifest_data, runtime):
        orchestrator = ComposeOrchestrator(parse_manifest(manifest_data), runtime)
        await orchestrator.up(["filesystem", "weather"])

        manifest_data["servers"]["weather"]["env"] = {"UNITS": "metric"}
        del manifest_data["servers"]["filesystem"]
        manifest_data["servers"]["weather"]["depends_on"] = []
        manifest_data["servers"]["notes"]["depends_on"] = []
        manifest_data["servers"]["search"] = {"image": "mcp/search:latest"}

        changes = await orchestrator.reload(parse_manifest(manifest_data))

        assert changes == {"stopped": ["filesystem"], "started": ["search"], "recreated": ["weather"]}
        assert runtime.started[-2].env["UNITS"] == "metric"
        assert await orchestrator.status("notes") == WorkloadStatus.STOPPED

    @pytest.mark.asyncio
    async def test_reload_same_manifest_is_noop(self, manifest, runtime):
        orchestrator = ComposeOrchestrator(manifest, runtime)
        await orchestrator.up()
        before = len(runtime.started)

        changes = await orchestrator.reload(manifest.model_copy(deep=True))

        assert changes == {"stopped": [], "started": [], "recreated": []}
        assert len(runtime.started) == before


class TestHooks:
    """Test lifecycle hooks run through sh."""

    @pytest.mark.asyncio
    async def test_pre_start_failure_blocks_start(self, manifest_data, runtime, tmp_path):
        manifest_data["servers"]["filesystem"]["lifecycle"] = {"pre_start": "exit 3"}
        manifest = parse_manifest(manifest_data)
        manifest.path = tmp_path / "mcp-compose.yaml"
        orchestrator = ComposeOrchestrator(manifest, runtime)

        with pytest.raises(HookError, match="exit code 3"):
            await orchestrator.start_server("filesystem")
        assert runtime.started == []

    @pytest.mark.asyncio
    async def test_post_start_runs_in_background(self, manifest_data, runtime, tmp_path):
        marker = tmp_path / "hook-ran"
        manifest_data["servers"]["filesystem"]["lifecycle"] = {"post_start": f"echo $MCP_SERVER_NAME > {marker}"}
        manifest = parse_manifest(manifest_data)
        manifest.path = tmp_path / "mcp-compose.yaml"
        orchestrator = ComposeOrchestrator(manifest, runtime)

        await orchestrator.start_server("filesystem")
        await orchestrator.wait_background()

        assert marker.read_text().strip() == "filesystem"

    @pytest.mark.asyncio
    async def test_hook_timeout(self, manifest, runtime):
        orchestrator = ComposeOrchestrator(manifest, runtime, hook_timeout=0.1)
        with pytest.raises(HookError, match="timed out"):
            await orchestrator.run_hook("filesystem", "pre_start", "sleep 5")


class TestProcessServers:
    """Test command-only servers supervised as host processes."""

    @pytest.mark.asyncio
    async def test_process_lifecycle(self, tmp_path, runtime):
        manifest = parse_manifest({"servers": {"local": {"command": "sleep", "args": ["30"]}}})
        manifest.path = tmp_path / "mcp-compose.yaml"
        supervisor = ProcessSupervisor(tmp_path / "state")
        orchestrator = ComposeOrchestrator(manifest, runtime, processes=supervisor)

        await orchestrator.start_server("local")
        try:
            assert await orchestrator.status("local") == WorkloadStatus.RUNNING
            assert supervisor.pid_file("mcp-compose-local").exists()
            assert runtime.started == []
        finally:
            await orchestrator.stop_server("local")

        assert await orchestrator.status("local") == WorkloadStatus.STOPPED
        assert not supervisor.pid_file("mcp-compose-local").exists()

    def test_read_logs(self, tmp_path):
        supervisor = ProcessSupervisor(tmp_path)
        with pytest.raises(EngineError):
            supervisor.read_logs("mcp-compose-local")

        supervisor.log_dir.mkdir(parents=True)
        supervisor.log_file("mcp-compose-local").write_text("one\ntwo\nthree\n")
        assert supervisor.read_logs("mcp-compose-local", tail=2) == "two\nthree"

    @pytest.mark.asyncio
    async def test_missing_command(self, tmp_path):
        supervisor = ProcessSupervisor(tmp_path)
        with pytest.raises(EngineError) as exc_info:
            await supervisor.start("mcp-compose-ghost", "definitely-not-a-real-binary-xyz")
        assert exc_info.value.kind == "start-failed"
