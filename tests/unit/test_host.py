"""Unit tests for host facts."""

import socket

import pytest

from egress_sidecar.system.host import detect_os_family, is_port_bound


@pytest.mark.parametrize(
    ("content", "family"),
    [
        ('ID=ubuntu\nID_LIKE=debian\n', "debian"),
        ('ID="rocky"\nID_LIKE="rhel centos fedora"\n', "rhel"),
        ("ID=amzn\n", "rhel"),
        ("# comment\nID=alpine\n", None),
    ],
)
def test_detect_os_family(tmp_path, content, family):
    path = tmp_path / "os-release"
    path.write_text(content)
    assert detect_os_family(str(path)) == family


def test_missing_os_release(tmp_path):
    assert detect_os_family(str(tmp_path / "absent")) is None


def test_port_bound_by_listener():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen()
        port = listener.getsockname()[1]
        assert is_port_bound(port) is True


def test_free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
    assert is_port_bound(port) is False
