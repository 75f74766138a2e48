from webob import Response
from webob.exc import HTTPBadRequest
import sys, getopt

from .WebApp import WebApp, WebHandler, webmethod
from .State import SharedCounter, AppInfo
from .HTTPServer import HTTPServer

MAX_USER_ID = 2**32 - 1

DEFAULT_APP_NAME = "WebCounter Demo"
DEFAULT_DEVELOPER = "Alberto Caballero"


class ApiHandler(WebHandler):

    @webmethod(["GET"])
    def test(self, request, relpath, **args):
        if relpath:     return None
        return "Scoped Configured"


class DemoHandler(WebHandler):

    AllowedMethods = ["GET"]

    def __init__(self, request, app):
        WebHandler.__init__(self, request, app)
        self.api = ApiHandler(request, app)
        self.addHandler("app-info", self.app_info, methods=["GET"])

    def countRequest(self):
        return "Request #%d" % (self.App.Counter.increment_and_read(),)

    def __call__(self, request, relpath, **args):
        return self.countRequest()

    @webmethod(["GET"])
    def counter(self, request, relpath, **args):
        if relpath:     return None
        return self.countRequest()

    # /index?username=Alberto
    @webmethod(["GET"])
    def index(self, request, relpath, username=None, **args):
        if relpath:     return None
        if not isinstance(username, str):
            raise HTTPBadRequest("Query parameter 'username' is required exactly once")
        return "Welcome %s" % (username,)

    def app_info(self, request, relpath, **args):
        info = self.App.Info
        return "Welcome to %s! By %s" % (info.name, info.developer)

    # /users/<user_id>/<friend>
    @webmethod(["GET"])
    def users(self, request, relpath, **args):
        words = relpath.split("/")
        if len(words) != 2 or not words[1]:
            return None
        user_id, friend = words
        if not (user_id.isascii() and user_id.isdigit()) or int(user_id) > MAX_USER_ID:
            return None
        return "Welcome %s, user_id %d!" % (friend, int(user_id))

    @webmethod(["POST"])
    def echo(self, request, relpath, **args):
        if relpath:     return None
        response = Response(body=request.body)
        response.headers["Content-Type"] = request.headers.get("Content-Type") or "text/plain"
        return response

    @webmethod(["GET"])
    def hey(self, request, relpath, **args):
        if relpath:     return None
        return "Manual hello!"

    @webmethod(["GET"])
    def guarded(self, request, relpath, **args):
        if relpath:     return None
        return "On guard!"

    @webmethod(["GET"])
    def app(self, request, relpath, **args):
        if relpath:     return None
        return "Configured"


class DemoApp(WebApp):

    def __init__(self, handler_class=DemoHandler, info=None, counter=None, debug=False):
        WebApp.__init__(self, handler_class, debug=debug)
        self.Info = info if info is not None else AppInfo(DEFAULT_APP_NAME, DEFAULT_DEVELOPER)
        self.Counter = counter if counter is not None else SharedCounter()


Usage = """Usage: webcounter [options]
    -p <port>               port to listen on, default 5050
    -a <address>            address to bind to, default 127.0.0.1
    -w <workers>            number of worker threads, default 4
    -k os|none|<seconds>    HTTP keep-alive: OS managed, disabled or idle timeout, default os
    -c <cert.pem>           TLS certificate chain, requires -K
    -K <key.pem>            TLS private key, requires -c
    -n <name>               application name, default "%s"
    -d <developer>          developer name, default "%s"
    -l <log file>           access log file, default stdout
    -D                      include tracebacks in error responses
""" % (DEFAULT_APP_NAME, DEFAULT_DEVELOPER)


class UsageError(Exception):
    pass


def parseOptions(argv):
    # returns (DemoApp, port, server keyword arguments)
    try:
        opts, args = getopt.getopt(argv, "p:a:w:k:c:K:n:d:l:D")
    except getopt.GetoptError as e:
        raise UsageError(str(e))
    if args:
        raise UsageError("Unexpected arguments: %s" % (" ".join(args),))
    opts = dict(opts)

    certfile, keyfile = opts.get("-c"), opts.get("-K")
    if (certfile is None) != (keyfile is None):
        raise UsageError("HTTPS requires both a certificate (-c) and a private key (-K)")

    try:
        port = int(opts.get("-p", 5050))
        workers = int(opts.get("-w", 4))
        keep_alive = HTTPServer.keepAliveMode(opts.get("-k", "os"))
    except ValueError as e:
        raise UsageError(str(e))
    if workers < 1:
        raise UsageError("Number of workers must be positive")

    app = DemoApp(
        info = AppInfo(opts.get("-n", DEFAULT_APP_NAME), opts.get("-d", DEFAULT_DEVELOPER)),
        debug = "-D" in opts
    )
    server_args = dict(
        host = opts.get("-a", "127.0.0.1"),
        workers = workers,
        keep_alive = keep_alive,
        certfile = certfile,
        keyfile = keyfile,
        log_file = opts.get("-l")
    )
    return app, port, server_args


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    try:
        app, port, server_args = parseOptions(argv)
    except UsageError as e:
        print(e)
        print(Usage)
        sys.exit(2)

    if server_args["log_file"] is not None:
        server_args["log_file"] = open(server_args["log_file"], "a", buffering=1)

    scheme = "https" if server_args["certfile"] else "http"
    print("Server is listening at %s://%s:%d ..." % (scheme, server_args["host"], port))
    app.run_server(port, **server_args)


if __name__ == '__main__':
    main()
