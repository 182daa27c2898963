"""
Tests for RelayService wiring and logging setup.
"""

import logging
import logging.handlers

import httpx
import pytest

from relay.__main__ import configure_logging
from relay.config import RelayConfig
from relay.core.endpoint import EndpointKey
from relay.core.supervisor import ProcessSupervisor
from relay.service import RelayService


@pytest.fixture
def config(tmp_path):
    static_dir = tmp_path / "public"
    static_dir.mkdir()
    (static_dir / "index.html").write_text("<html>relay</html>")
    return RelayConfig(
        host="127.0.0.1",
        port=0,
        static_dir=static_dir,
        listener_bin="/opt/jam-listener",
        ffmpeg_bin="/opt/ffmpeg",
        bitrate="96k",
        grace_ms=250,
    )


class TestWiring:
    def test_channels_use_configured_pipeline(self, config):
        relay = RelayService(config)

        channel = relay.registry.get_or_create(EndpointKey("192.0.2.1", 22124))
        supervisor = channel._supervisor_factory(channel.key, lambda chunk: None, lambda reason: None)

        assert isinstance(supervisor, ProcessSupervisor)
        assert supervisor.capture_cmd == ["/opt/jam-listener", "--server", "192.0.2.1:22124"]
        assert supervisor.transcoder_cmd[0] == "/opt/ffmpeg"
        assert "96k" in supervisor.transcoder_cmd
        assert channel.grace_sec == 0.25

    @pytest.mark.timeout(10)
    def test_start_serves_and_stop_shuts_down(self, config):
        relay = RelayService(config)
        relay.start()
        try:
            port = relay.http_server.port
            assert port != 0

            response = httpx.get(f"http://127.0.0.1:{port}/relay/status", timeout=5.0)
            assert response.status_code == 200
            assert response.json() == {"channels": [], "listeners": 0}

            index = httpx.get(f"http://127.0.0.1:{port}/", timeout=5.0)
            assert index.status_code == 200
        finally:
            relay.stop()

        assert relay.running is False
        with pytest.raises(httpx.TransportError):
            httpx.get(f"http://127.0.0.1:{port}/relay/status", timeout=1.0)

    def test_stop_before_start(self, config):
        relay = RelayService(config)

        relay.stop()
        relay.run_forever()  # returns immediately once stopped


class TestLogging:
    def test_log_file_handler_added(self, config, tmp_path):
        config.log_file = str(tmp_path / "relay.log")
        root = logging.getLogger()
        before = list(root.handlers)

        configure_logging(config)
        try:
            added = [h for h in root.handlers if h not in before and isinstance(h, logging.FileHandler)]
            assert len(added) == 1
            assert isinstance(added[0], logging.handlers.WatchedFileHandler)

            logging.getLogger("relay.test").warning("written to file")
            added[0].flush()
            assert "written to file" in (tmp_path / "relay.log").read_text()
        finally:
            for handler in root.handlers[:]:
                if handler not in before:
                    root.removeHandler(handler)
                    handler.close()

    def test_unwritable_log_file_is_not_fatal(self, config, tmp_path):
        config.log_file = str(tmp_path / "missing-dir" / "relay.log")
        root = logging.getLogger()
        before = list(root.handlers)

        configure_logging(config)

        assert not any(isinstance(h, logging.FileHandler) for h in root.handlers if h not in before)
