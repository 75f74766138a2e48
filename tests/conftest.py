import io
import pytest

from webcounter import DemoApp, HTTPServer


@pytest.fixture
def app():
    return DemoApp()


@pytest.fixture
def access_log():
    return io.StringIO()


@pytest.fixture
def server(app, access_log):
    srv = HTTPServer(0, app, host="127.0.0.1", workers=8, keep_alive=5, log_file=access_log)
    srv.start()
    yield srv
    srv.stop()
    srv.join(5)
