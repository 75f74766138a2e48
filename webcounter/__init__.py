from .WebApp import (WebApp, WebHandler, Response, webmethod, makeResponse)
from .HTTPServer import (HTTPServer, HTTPSServer, run_server)
from .State import (SharedCounter, CounterPoisoned, AppInfo)
from .DemoApp import (DemoApp, DemoHandler)


__all__ = [ "WebApp", "WebHandler", "Response", "webmethod", "makeResponse",
	"HTTPServer", "HTTPSServer", "run_server",
	"SharedCounter", "CounterPoisoned", "AppInfo",
	"DemoApp", "DemoHandler"
]
