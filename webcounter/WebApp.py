from webob import Request, Response
from webob.exc import HTTPException, HTTPNotFound, HTTPMethodNotAllowed

import sys, time, traceback, fnmatch
from collections.abc import Iterable

_WebMethodSignature = "__WebApp:webmethod__"

# positional parameters of handler calls, never taken from the query string
_ReservedArgs = ("self", "handler", "request", "relpath")

#
# Decorators
#

def webmethod(methods=None):
    #
    # Usage:
    #
    # class Handler(WebHandler):
    #   ...
    #   @webmethod()            # <-- important: parenthesis required !
    #   def hello(self, req, relpath, **args):
    #       ...
    #
    #   @webmethod(["POST"])
    #   def method(self, req, relpath, **args):
    #       ...
    #
    if isinstance(methods, str):
        methods = [methods]
    allowed = None if methods is None else [m.upper() for m in methods]

    def decorator(method):
        def decorated(handler, request, relpath, *params, **args):
            if allowed is not None and request.method not in allowed:
                return methodNotAllowed(allowed)
            return method(handler, request, relpath, *params, **args)
        decorated.__doc__ = _WebMethodSignature
        decorated.__name__ = method.__name__
        return decorated
    return decorator

def methodNotAllowed(allowed):
    return HTTPMethodNotAllowed(headers={"Allow": ", ".join(allowed)})


def makeResponse(resp):
    #
    # acceptable responses:
    #
    # Response
    # text              -- ala Flask
    # (text, status)
    # (text, "content_type")
    # (text, {headers})
    # (text, status, "content_type")
    # (text, status, {headers})
    #

    if isinstance(resp, Response):
        return resp

    body_or_iter = None
    status = None
    extra = None
    if isinstance(resp, tuple) and len(resp) == 2:
        body_or_iter, extra = resp
    elif isinstance(resp, tuple) and len(resp) == 3:
        body_or_iter, status, extra = resp
    elif isinstance(resp, (str, bytes)):
        body_or_iter = resp
    elif isinstance(resp, Iterable):
        body_or_iter = resp
    else:
        raise ValueError("Handler method returned uninterpretable value: " + repr(resp))

    response = Response(content_type="text/plain")

    if isinstance(body_or_iter, str):
        response.text = body_or_iter
    elif isinstance(body_or_iter, bytes):
        response.body = body_or_iter
    elif isinstance(body_or_iter, Iterable):
        response.app_iter = body_or_iter
    else:
        raise ValueError("Unknown type for response body: " + str(type(body_or_iter)))

    if status is not None:
        response.status = status

    if extra is not None:
        if isinstance(extra, dict):
            response.headers.update(extra)
        elif isinstance(extra, str):
            response.content_type = extra
        elif isinstance(extra, int):
            response.status = extra
        else:
            raise ValueError("Unknown type for headers: " + repr(extra))

    return response


class WebHandler:

    #
    # names of methods callable from the web without @webmethod
    #
    _Methods = None

    #
    # HTTP methods accepted when the handler itself is the target of the path,
    # None means any
    #
    AllowedMethods = None

    def __init__(self, request, app):
        self.App = app
        self.Request = request
        self.RouteMap = []

    def addHandler(self, pattern, handler, status=200, content_type="text/plain", methods=None):
        if isinstance(handler, WebHandler):
            self.RouteMap.append((pattern, handler))
        elif callable(handler):
            self.addHandler(pattern, WebLambdaHandler(self.Request, self.App, handler, methods))
        elif isinstance(handler, (str, bytes)):
            self.addHandler(pattern, WebResponder(self.Request, self.App, handler, status, content_type, methods))
        else:
            raise ValueError("Unknown handler type for %s: %s" % (pattern, type(handler)))

    def wsgi_call(self, environ, start_response):
        request = self.Request
        try:
            response = self.walk_down(request, request.path_info.split("/"), self.queryArgs(request))
        except HTTPException as val:
            response = val
        except Exception:
            response = self.App.applicationErrorResponse(
                "Uncaught exception", sys.exc_info(), environ)
        return response(environ, start_response)

    def queryArgs(self, request):
        # single value -> str, repeated -> list of str
        out = {}
        for k, values in request.GET.dict_of_lists().items():
            if k and k not in _ReservedArgs:
                out[k] = values[0] if len(values) == 1 else values
        return out

    def exposed(self, name, item):
        return (
                (self._Methods is not None and name in self._Methods)
            or
                getattr(item, "__doc__", None) == _WebMethodSignature
        )

    def walk_down(self, request, path_down, args):
        while path_down and not path_down[0]:
            path_down = path_down[1:]

        response = None
        if not path_down:
            if callable(self):
                if self.AllowedMethods is not None and request.method not in self.AllowedMethods:
                    return methodNotAllowed(self.AllowedMethods)
                response = self(request, "", **args)
        else:
            item_name = path_down[0]
            path_down = path_down[1:]
            item = None if item_name.startswith("_") else getattr(self, item_name, None)
            if isinstance(item, WebHandler):
                response = item.walk_down(request, path_down, args)
            elif callable(item) and self.exposed(item_name, item):
                relpath = "/".join(path_down)
                response = item(request, relpath, **args)
            else:
                for pattern, handler in self.RouteMap:
                    if fnmatch.fnmatchcase(item_name, pattern):
                        response = handler.walk_down(request, path_down, args)
                        break

        if response is None:
            return HTTPNotFound("Invalid path %s" % (request.path_info,))

        try:
            response = makeResponse(response)
        except ValueError as e:
            response = self.App.applicationErrorResponse(str(e), sys.exc_info(), request.environ)

        return response


class WebLambdaHandler(WebHandler):

    def __init__(self, request, app, callable, methods=None):
        WebHandler.__init__(self, request, app)
        self.F = callable
        self.AllowedMethods = methods

    def __call__(self, request, relpath, **args):
        return self.F(request, relpath, **args)

class WebResponder(WebHandler):

    def __init__(self, request, app, body, status=200, content_type="text/plain", methods=None):
        WebHandler.__init__(self, request, app)
        self.Body = body
        self.Status = status
        self.ContentType = content_type
        self.AllowedMethods = methods

    def __call__(self, request, relpath, **args):
        return makeResponse((self.Body, self.Status, self.ContentType))


class WebApp:

    def __init__(self, root_class, debug=False):
        assert issubclass(root_class, WebHandler)
        self.RootClass = root_class
        self.Debug = debug

    def applicationErrorResponse(self, headline, exc_info, environ=None):
        typ, val, tb = exc_info
        exc_text = ''.join(traceback.format_exception(typ, val, tb))
        errors = environ.get("wsgi.errors") if environ is not None else None
        if errors is not None:
            errors.write("%s: %s\n%s" % (time.ctime(), headline, exc_text))
            errors.flush()
        text = "Application error: %s\n" % (headline,)
        if self.Debug:
            text += "\n" + exc_text
        return Response(text, status="500 Application Error", content_type="text/plain")

    def __call__(self, environ, start_response):
        req = Request(environ)
        try:
            root = self.RootClass(req, self)
            return root.wsgi_call(environ, start_response)
        except Exception:
            resp = self.applicationErrorResponse(
                "Uncaught exception", sys.exc_info(), environ)
        return resp(environ, start_response)

    def run_server(self, port, **args):
        from .HTTPServer import run_server
        run_server(port, self, **args)
