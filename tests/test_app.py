import io
import re
from concurrent.futures import ThreadPoolExecutor

import pytest
from webob import Request

from webcounter import DemoApp, AppInfo, SharedCounter, WebApp, WebHandler, webmethod, makeResponse
from webcounter.State import CounterPoisoned


def get(app, path, **kw):
    return Request.blank(path, **kw).get_response(app)


def test_counter_sequence(app):
    assert [get(app, "/counter").text for _ in range(3)] == ["Request #1", "Request #2", "Request #3"]


def test_root_shares_the_counter(app):
    assert get(app, "/").text == "Request #1"
    assert get(app, "/counter").text == "Request #2"
    assert get(app, "/").text == "Request #3"


def test_counter_response_is_plain_text(app):
    resp = get(app, "/counter")
    assert resp.status_int == 200
    assert resp.content_type == "text/plain"


def test_concurrent_counter_requests(app):
    with ThreadPoolExecutor(max_workers=16) as pool:
        texts = list(pool.map(lambda _: get(app, "/counter").text, range(50)))
    numbers = [int(re.match(r"Request #(\d+)$", t).group(1)) for t in texts]
    assert sorted(numbers) == list(range(1, 51))


def test_app_info_unaffected_by_counter(app):
    def hit(i):
        return get(app, "/app-info" if i % 2 else "/counter").text

    with ThreadPoolExecutor(max_workers=16) as pool:
        texts = list(pool.map(hit, range(200)))
    infos = set(t for t in texts if t.startswith("Welcome"))
    assert infos == {"Welcome to WebCounter Demo! By Alberto Caballero"}
    assert app.Counter.value() == 100


def test_custom_app_info():
    app = DemoApp(info=AppInfo("Actix Test", "AlbertoCaballero"))
    assert get(app, "/app-info").text == "Welcome to Actix Test! By AlbertoCaballero"


def test_injected_counter():
    counter = SharedCounter(initial=41)
    app = DemoApp(counter=counter)
    assert get(app, "/counter").text == "Request #42"
    assert counter.value() == 42


def test_index_query(app):
    assert get(app, "/index?username=Alberto").text == "Welcome Alberto"
    assert get(app, "/index?username=J%C3%BCrgen").text == "Welcome Jürgen"


@pytest.mark.parametrize("query", ["", "?name=Alberto", "?username=a&username=b"])
def test_index_requires_single_username(app, query):
    assert get(app, "/index" + query).status_int == 400


def test_users_path(app):
    assert get(app, "/users/42/bob").text == "Welcome bob, user_id 42!"
    assert get(app, "/users/4294967295/bob").text == "Welcome bob, user_id 4294967295!"


@pytest.mark.parametrize("path", [
    "/users/abc/bob",
    "/users/-1/bob",
    "/users/4294967296/bob",
    "/users/42",
    "/users/42/",
    "/users/42/bob/extra",
])
def test_users_path_rejected(app, path):
    assert get(app, path).status_int == 404


def test_echo(app):
    resp = get(app, "/echo", method="POST", body=b'{"a": 1}', content_type="application/json")
    assert resp.status_int == 200
    assert resp.body == b'{"a": 1}'
    assert resp.content_type == "application/json"


def test_echo_keeps_content_type_parameters(app):
    body = "caf\xe9".encode("latin-1")
    resp = get(app, "/echo", method="POST", body=body,
            headers={"Content-Type": "text/html; charset=latin-1"})
    assert resp.status_int == 200
    assert resp.headers["Content-Type"] == "text/html; charset=latin-1"
    assert resp.body == body


@pytest.mark.parametrize("path, text", [
    ("/?self=1", "Request #1"),
    ("/counter?handler=1", "Request #1"),
    ("/counter?request=x&relpath=y", "Request #1"),
    ("/index?username=a&self=x", "Welcome a"),
])
def test_query_keys_matching_call_parameters_are_ignored(app, path, text):
    resp = get(app, path)
    assert resp.status_int == 200
    assert resp.text == text


def test_echo_requires_post(app):
    resp = get(app, "/echo")
    assert resp.status_int == 405
    assert resp.headers["Allow"] == "POST"


@pytest.mark.parametrize("path, text", [
    ("/hey", "Manual hello!"),
    ("/guarded", "On guard!"),
    ("/app", "Configured"),
    ("/api/test", "Scoped Configured"),
])
def test_fixed_routes(app, path, text):
    resp = get(app, path)
    assert resp.status_int == 200
    assert resp.text == text


@pytest.mark.parametrize("path", ["/app", "/api/test"])
def test_head_not_allowed(app, path):
    resp = get(app, path, method="HEAD")
    assert resp.status_int == 405
    assert resp.headers["Allow"] == "GET"


def test_counter_rejects_post(app):
    assert get(app, "/counter", method="POST").status_int == 405
    assert get(app, "/", method="POST").status_int == 405
    assert app.Counter.value() == 0


@pytest.mark.parametrize("path", ["/nowhere", "/api", "/api/other", "/hey/there", "/App", "/countRequest", "/_private"])
def test_unknown_routes(app, path):
    assert get(app, path).status_int == 404
    assert app.Counter.value() == 0


class FlakyCounter(SharedCounter):

    Fail = False

    def step(self, value):
        if self.Fail:
            raise RuntimeError("failure inside critical section")
        return value + 1


def test_poisoned_counter_answers_500():
    counter = FlakyCounter()
    app = DemoApp(counter=counter)
    errors = io.StringIO()
    assert get(app, "/counter").text == "Request #1"

    counter.Fail = True
    resp = get(app, "/counter", environ={"wsgi.errors": errors})
    assert resp.status_int == 500
    assert "RuntimeError" in errors.getvalue()
    assert "Traceback" not in resp.text

    counter.Fail = False
    resp = get(app, "/", environ={"wsgi.errors": errors})
    assert resp.status_int == 500
    assert CounterPoisoned.__name__ in errors.getvalue()

    # other routes keep working
    assert get(app, "/hey").text == "Manual hello!"

    counter.clear_poison()
    assert get(app, "/counter").text == "Request #2"


def test_debug_includes_traceback():
    counter = FlakyCounter()
    counter.Fail = True
    app = DemoApp(counter=counter, debug=True)
    resp = get(app, "/counter", environ={"wsgi.errors": io.StringIO()})
    assert resp.status_int == 500
    assert "Traceback" in resp.text


class SampleHandler(WebHandler):

    _Methods = ["listed"]

    def __init__(self, request, app):
        WebHandler.__init__(self, request, app)
        self.addHandler("const*", "constant text", status=202)
        self.addHandler("lambda", lambda request, relpath, text="hello", **args: "text was: %s" % (text,))

    def listed(self, request, relpath, **args):
        return "listed " + relpath

    def hidden(self, request, relpath, **args):
        return "hidden"

    @webmethod()
    def args(self, request, relpath, **args):
        return ",".join("%s=%s" % (k, v) for k, v in sorted(args.items()))

    @webmethod()
    def bad(self, request, relpath, **args):
        return 42


def test_listed_and_hidden_methods():
    app = WebApp(SampleHandler)
    assert get(app, "/listed/a/b").text == "listed a/b"
    assert get(app, "/hidden").status_int == 404


def test_route_map_handlers():
    app = WebApp(SampleHandler)
    resp = get(app, "/constant-xyz")
    assert resp.status_int == 202
    assert resp.text == "constant text"
    assert get(app, "/lambda?text=hi").text == "text was: hi"
    assert get(app, "/lambda").text == "text was: hello"


def test_query_args_passed_to_method():
    app = WebApp(SampleHandler)
    assert get(app, "/args?b=2&a=1&a=3&relpath=x").text == "a=['1', '3'],b=2"
    assert get(app, "/args?handler=1&self=2&c=3").text == "c=3"
    assert get(app, "/lambda?request=x&text=hi").text == "text was: hi"


def test_uninterpretable_return_value():
    app = WebApp(SampleHandler)
    assert get(app, "/bad", environ={"wsgi.errors": io.StringIO()}).status_int == 500


def test_make_response_forms():
    resp = makeResponse("text")
    assert (resp.status_int, resp.text, resp.content_type) == (200, "text", "text/plain")

    resp = makeResponse(("created", 201))
    assert (resp.status_int, resp.text) == (201, "created")

    resp = makeResponse(("{}", "application/json"))
    assert resp.content_type == "application/json"

    resp = makeResponse(("x", {"X-Extra": "1"}))
    assert resp.headers["X-Extra"] == "1"

    resp = makeResponse((b"<b>gone</b>", 410, "text/html"))
    assert (resp.status_int, resp.body, resp.content_type) == (410, b"<b>gone</b>", "text/html")

    resp = makeResponse(iter([b"a", b"b"]))
    assert resp.body == b"ab"

    with pytest.raises(ValueError):
        makeResponse(42)
