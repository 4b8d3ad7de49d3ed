"""
Unit tests for the Docker runtime's payload translation.

No Docker daemon is needed; only the request/response mapping is tested.
"""

import pytest

from instancer.infrastructure.orchestrator import (
    ContainerRuntimeError,
    DockerRuntime,
    PortBinding,
    RuntimeStartRequest,
)


@pytest.fixture
def runtime():
    return DockerRuntime()


class TestBuildContainerConfig:
    """Test create payload generation."""

    def test_full_request(self, runtime):
        request = RuntimeStartRequest(
            name="sbx_team_1_101_1700000000",
            image="ctf/web:latest",
            ports=[PortBinding("80", 50000), PortBinding("53/udp")],
            env={"FLAG": "flag{x}"},
            args=["flag{x}"],
            labels={"instancer.team_id": "1"},
            cpu_limit="0.5",
            memory_limit="256m",
        )
        config = runtime.build_container_config(request)

        assert config["Image"] == "ctf/web:latest"
        assert config["Env"] == ["FLAG=flag{x}"]
        assert config["Cmd"] == ["flag{x}"]
        assert config["Labels"] == {"instancer.team_id": "1"}
        assert config["ExposedPorts"] == {"80/tcp": {}, "53/udp": {}}
        assert config["HostConfig"]["PortBindings"] == {
            "80/tcp": [{"HostPort": "50000"}],
            "53/udp": [{"HostPort": ""}],
        }
        assert config["HostConfig"]["NanoCpus"] == 500_000_000
        assert config["HostConfig"]["Memory"] == 256 * 1024 ** 2

    def test_minimal_request(self, runtime):
        config = runtime.build_container_config(RuntimeStartRequest(name="x", image="img"))
        assert "Cmd" not in config
        assert "NanoCpus" not in config["HostConfig"]
        assert "Memory" not in config["HostConfig"]


class TestExtractPortMap:
    """Test published port parsing from inspect output."""

    def test_published_ports(self, runtime):
        info = {
            "NetworkSettings": {
                "Ports": {
                    "80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "32768"}],
                    "22/tcp": None,
                    "53/udp": [{"HostIp": "::", "HostPort": ""}, {"HostPort": "32770"}],
                }
            }
        }
        assert runtime.extract_port_map(info) == {"80": 32768, "53": 32770}

    def test_no_network_settings(self, runtime):
        assert runtime.extract_port_map({}) == {}


class TestLimits:
    """Test resource limit parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("512", 512),
            ("64k", 64 * 1024),
            ("256m", 256 * 1024 ** 2),
            ("256MB", 256 * 1024 ** 2),
            ("1.5g", int(1.5 * 1024 ** 3)),
            ("2gb", 2 * 1024 ** 3),
        ],
    )
    def test_parse_memory(self, runtime, value, expected):
        assert runtime._parse_memory(value) == expected

    def test_parse_cpus(self, runtime):
        assert runtime._parse_cpus("2") == 2_000_000_000
        assert runtime._parse_cpus("0.25") == 250_000_000

    @pytest.mark.parametrize("method,value", [("_parse_memory", "lots"), ("_parse_cpus", "many")])
    def test_invalid_limits(self, runtime, method, value):
        with pytest.raises(ContainerRuntimeError):
            getattr(runtime, method)(value)
