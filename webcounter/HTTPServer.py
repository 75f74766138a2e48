import fnmatch, traceback, sys, select, time, ssl
from socket import *
from urllib.parse import unquote_to_bytes
from pythreader import PyThread, synchronized, Task, TaskQueue


class BodyFile(object):

    MAXMSG = 100000

    def __init__(self, buf, sock, length):
        self.Buffer = list(buf)
        self.Sock = sock
        self.Remaining = length

    def get_chunk(self, n):
        out = b''
        if self.Buffer:
            chunk = self.Buffer[0]
            if len(chunk) > n:
                out = chunk[:n]
                self.Buffer[0] = chunk[n:]
            else:
                out = chunk
                self.Buffer = self.Buffer[1:]
        elif self.Sock is not None:
            try:
                out = self.Sock.recv(n)
            except OSError:
                out = b''
            if not out: self.Sock = None
        return out

    def read(self, N=None):
        if N is None or N < 0 or N > self.Remaining:
            N = self.Remaining
        out = []
        n = 0
        while n < N:
            chunk = self.get_chunk(min(self.MAXMSG, N - n))
            if not chunk:
                break
            n += len(chunk)
            out.append(chunk)
        self.Remaining -= n
        return b''.join(out)

    def readline(self, size=-1):
        out = []
        n = 0
        while self.Remaining > 0 and (size is None or size < 0 or n < size):
            limit = self.Remaining if size is None or size < 0 else min(self.Remaining, size - n)
            chunk = self.get_chunk(min(self.MAXMSG, limit))
            if not chunk:
                break
            inx = chunk.find(b'\n')
            if inx >= 0 and inx + 1 < len(chunk):
                self.Buffer.insert(0, chunk[inx+1:])
                chunk = chunk[:inx+1]
            n += len(chunk)
            self.Remaining -= len(chunk)
            out.append(chunk)
            if chunk.endswith(b'\n'):
                break
        return b''.join(out)

    def readlines(self, hint=None):
        return list(self)

    def __iter__(self):
        while True:
            line = self.readline()
            if not line:
                break
            yield line

    def drain(self):
        # skip whatever the application did not read so the next request starts at the right place
        while self.Remaining > 0 and self.read(self.MAXMSG):
            pass
        return self.Remaining == 0


class HTTPConnection(Task):

    MAXMSG = 100000
    MAXHEAD = 65536
    SELECT_TIMEOUT = 10.0
    OS_IDLE_TIMEOUT = 60.0
    YIELD_INTERVAL = 0.2

    def __init__(self, server, csock, caddr):
        Task.__init__(self)
        self.Server = server
        self.CAddr = caddr
        self.CSock = csock
        self.ReadClosed = False
        self.InBuffer = b""
        self.IdleSince = time.time()
        self.Served = 0
        self.resetRequest()

    def resetRequest(self):
        self.Request = None
        self.Headers = []
        self.HeadersDict = {}
        self.URL = None
        self.RequestMethod = None
        self.RequestProtocol = None
        self.PathInfo = None
        self.QueryString = ""
        self.Body = []
        self.BodyLength = 0
        self.OutBuffer = []
        self.OutputEnabled = False
        self.BytesSent = 0
        self.ResponseStatus = None
        self.ResponseStatusLine = None
        self.ResponseHeaders = []
        self.WriteBuffer = []
        self.Closing = False
        self.Persistent = False

    def requestReceived(self, head):
        # returns False if the request was rejected and an error response is on its way
        lines = head.split('\n')
        lines = [l.strip() for l in lines if l.strip()]
        if not lines:
            return self.sendError("400 Bad Request")
        self.Request = lines[0]
        words = self.Request.split()
        if len(words) != 3 or not words[2].upper().startswith("HTTP/"):
            return self.sendError("400 Bad Request")
        self.RequestMethod = words[0].upper()
        self.URL = words[1]
        self.RequestProtocol = words[2].upper()
        uwords = self.URL.split('?', 1)
        self.PathInfo = uwords[0]
        if len(uwords) > 1: self.QueryString = uwords[1]
        for h in lines[1:]:
            words = h.split(':', 1)
            name = words[0].strip()
            value = ''
            if len(words) > 1:
                value = words[1].strip()
            if name:
                self.Headers.append((name, value))
                self.HeadersDict[name] = value
        if not self.Server.urlMatch(self.PathInfo):
            return self.sendError("404 Not Found")
        if self.getHeader("Transfer-Encoding") is not None:
            return self.sendError("501 Not Implemented")
        length = self.getHeader("Content-Length")
        if length is not None:
            try:
                self.BodyLength = int(length)
            except ValueError:
                self.BodyLength = -1
            if self.BodyLength < 0:
                self.BodyLength = 0
                return self.sendError("400 Bad Request")
        return True

    def getHeader(self, header, default = None):
        # case-insensitive version of dictionary lookup
        h = header.lower()
        for k, v in self.HeadersDict.items():
            if k.lower() == h:
                return v
        return default

    def parseInput(self):
        self.InBuffer = self.InBuffer.lstrip(b"\r\n")
        inx_nn = self.InBuffer.find(b'\n\n')
        inx_rnrn = self.InBuffer.find(b'\r\n\r\n')
        if inx_nn < 0:
            inx = inx_rnrn
            n = 4
        elif inx_rnrn < 0:
            inx = inx_nn
            n = 2
        elif inx_nn < inx_rnrn:
            inx = inx_nn
            n = 2
        else:
            inx = inx_rnrn
            n = 4
        if inx < 0:
            if len(self.InBuffer) > self.MAXHEAD:
                self.InBuffer = b""
                self.sendError("431 Request Header Fields Too Large")
            return
        head = self.InBuffer[:inx].decode("iso-8859-1")
        rest = self.InBuffer[inx+n:]
        self.InBuffer = b""
        if not self.requestReceived(head):
            return
        if self.BodyLength:
            body, rest = rest[:self.BodyLength], rest[self.BodyLength:]
            if body:
                self.Body.append(body)
        self.InBuffer = rest
        self.processRequest()

    def environ(self):
        env = {
            "REQUEST_METHOD":   self.RequestMethod,
            "PATH_INFO":        unquote_to_bytes(self.PathInfo).decode("iso-8859-1"),
            "SCRIPT_NAME":      "",
            "QUERY_STRING":     self.QueryString,
            "SERVER_PROTOCOL":  self.RequestProtocol,
            "SERVER_NAME":      self.Server.Host or "localhost",
            "SERVER_PORT":      str(self.Server.Port),
            "REMOTE_ADDR":      self.CAddr[0],
            "REMOTE_PORT":      str(self.CAddr[1]),
            "CONTENT_LENGTH":   str(self.BodyLength) if self.BodyLength else "",
            "wsgi.version":     (1, 0),
            "wsgi.url_scheme":  self.Server.Scheme,
            "wsgi.errors":      self.Server.LogFile,
            "wsgi.multithread": True,
            "wsgi.multiprocess":    False,
            "wsgi.run_once":    False
        }
        for h, v in self.Headers:
            h = h.lower()
            if h == "content-type":
                env["CONTENT_TYPE"] = v
            elif h == "content-length":
                pass
            else:
                if h == "host":
                    env["SERVER_NAME"] = v.split(":", 1)[0]
                key = "HTTP_%s" % (h.upper().replace("-", "_"),)
                env[key] = env[key] + "," + v if key in env else v
        return env

    def processRequest(self):
        env = self.environ()

        if self.BodyLength and (self.getHeader("Expect") or "").lower() == "100-continue":
            try:
                self.CSock.sendall(b'HTTP/1.1 100 Continue\r\n\r\n')
            except OSError:
                self.shutdown()
                return

        body = BodyFile(self.Body, self.CSock, self.BodyLength)
        env["wsgi.input"] = body

        try:
            output = self.Server.wsgi_app(env, self.start_response)
            try:
                chunks = self.WriteBuffer + [c if isinstance(c, bytes) else c.encode("utf-8") for c in output]
            finally:
                if hasattr(output, "close"):
                    output.close()
        except Exception:
            self.Closing = True
            self.ResponseStatusLine = "500 Error"
            self.ResponseHeaders = [("Content-Type", "text/plain")]
            self.Server.logMessage("%s: error serving %s %s\n%s" % (
                self.CAddr[0], self.RequestMethod, self.URL, traceback.format_exc()))
            chunks = [b"500 Error\n"]
        if not body.drain():
            self.Closing = True
        self.sendResponse(chunks)

    def start_response(self, status, headers, exc_info=None):
        self.ResponseStatusLine = status
        self.ResponseHeaders = list(headers)
        return self.WriteBuffer.append

    def sendError(self, status):
        self.Closing = True
        self.ResponseStatusLine = status
        self.ResponseHeaders = [("Content-Type", "text/plain")]
        self.sendResponse([(status + "\n").encode("utf-8")])
        return False

    def keepAlive(self):
        if self.Closing or self.ReadClosed or self.Server.KeepAlive is None:
            return False
        connection = (self.getHeader("Connection") or "").lower()
        if "close" in connection:
            return False
        if self.RequestProtocol == "HTTP/1.1":
            return True
        return "keep-alive" in connection

    def sendResponse(self, chunks):
        status = self.ResponseStatusLine
        headers = [(h, v) for h, v in self.ResponseHeaders if h.lower() != "connection"]
        self.ResponseStatus = status.split()[0]
        if not any(h.lower() == "content-length" for h, v in headers):
            if self.RequestMethod == "HEAD":
                self.Closing = True
            elif self.ResponseStatus not in ("204", "304"):
                headers.append(("Content-Length", str(sum(len(c) for c in chunks))))
        self.Persistent = self.keepAlive()
        if not self.Persistent:
            headers.append(("Connection", "close"))
        elif self.RequestProtocol != "HTTP/1.1":
            headers.append(("Connection", "keep-alive"))
        head = ["HTTP/1.1 %s\r\n" % (status,)] + ["%s: %s\r\n" % (h, v) for h, v in headers] + ["\r\n"]
        self.OutBuffer = [''.join(head).encode("iso-8859-1")] + [c for c in chunks if c]
        self.OutputEnabled = True

    def doClientRead(self):
        try:
            data = self.CSock.recv(self.MAXMSG)
        except OSError:
            data = b""

        if data:
            self.IdleSince = time.time()
            self.InBuffer += data
            self.parseInput()
        else:
            self.ReadClosed = True
            self.shutdown()

    def doWrite(self):
        if self.OutBuffer:
            line = self.OutBuffer[0]
            try:
                sent = self.CSock.send(line)
            except OSError:
                sent = 0
            self.BytesSent += sent
            if not sent:
                self.shutdown()
                return
            else:
                line = line[sent:]
                if line:
                    self.OutBuffer[0] = line
                else:
                    self.OutBuffer = self.OutBuffer[1:]

    def responseSent(self):
        self.Server.log(self.CAddr, self.RequestMethod, self.URL, self.ResponseStatus, self.BytesSent)
        self.Served += 1
        if self.Persistent:
            self.resetRequest()
            self.IdleSince = time.time()
            if self.InBuffer:
                self.parseInput()       # pipelined request
        else:
            self.shutdown()

    def shutdown(self):
        if self.CSock is not None:
            self.CSock.close()
            self.CSock = None
        if self.Server is not None:
            self.Server.connectionClosed(self)
            self.Server = None

    def pendingInput(self):
        # TLS may hold decrypted bytes select() can not see
        return isinstance(self.CSock, ssl.SSLSocket) and self.CSock.pending() > 0

    def idleTimeout(self):
        keep_alive = self.Server.KeepAlive
        if keep_alive == "os":
            return self.OS_IDLE_TIMEOUT
        return keep_alive if isinstance(keep_alive, (int, float)) else None

    def isIdle(self):
        # between two requests on a kept-alive connection
        return self.Served > 0 and not self.OutputEnabled and not self.InBuffer

    def run(self):
        try:
            self.CSock = self.Server.secureSocket(self.CSock)
        except OSError as e:
            self.Server.logMessage("%s: connection rejected: %s" % (self.CAddr[0], e))
            self.CSock = None
            self.shutdown()
            return
        if self.Server.KeepAlive == "os":
            self.CSock.setsockopt(SOL_SOCKET, SO_KEEPALIVE, 1)

        while self.CSock is not None:       # shutdown() will set it to None
            if self.OutputEnabled:
                rlist, wlist = [], [self.CSock]
            else:
                rlist, wlist = [self.CSock], []
            idle = self.idleTimeout()
            if rlist and self.pendingInput():
                readable, writable = True, False
            else:
                timeout = self.SELECT_TIMEOUT if idle is None else min(self.SELECT_TIMEOUT, idle)
                if self.isIdle():
                    timeout = min(timeout, self.YIELD_INTERVAL)
                rlist, wlist, exlist = select.select(rlist, wlist, [], timeout)
                readable, writable = bool(rlist), bool(wlist)
            if readable:
                self.doClientRead()
            elif writable:
                self.doWrite()
            elif not self.OutputEnabled and idle is not None and time.time() > self.IdleSince + idle:
                self.shutdown()
            elif self.isIdle() and self.Server.connectionsWaiting():
                # give the worker to a queued connection
                self.shutdown()
            if self.CSock is not None and self.OutputEnabled and not self.OutBuffer:
                self.responseSent()


class HTTPServer(PyThread):

    Scheme = "http"
    BACKLOG = 128

    def __init__(self, port, app, host="", workers=4, max_queued=100, url_pattern="*",
                keep_alive="os", enabled=True, logging=True, log_file=None):
        PyThread.__init__(self, daemon=True)
        self.Host = host
        self.WSGIApp = app
        self.Match = url_pattern
        self.KeepAlive = self.keepAliveMode(keep_alive)
        self.Enabled = False
        self.Logging = logging
        self.LogFile = sys.stdout if log_file is None else log_file
        self.Connections = TaskQueue(workers, capacity = max_queued)
        self.Sock = self.listen(host, port)
        self.Port = self.Sock.getsockname()[1]
        if enabled:
            self.enableServer()

    @staticmethod
    def keepAliveMode(keep_alive):
        # None: close after each response, "os": rely on TCP keep-alive, number: idle timeout in seconds
        if keep_alive is None or keep_alive is False:
            return None
        if isinstance(keep_alive, str):
            keep_alive = keep_alive.lower()
            if keep_alive == "os":
                return "os"
            if keep_alive == "none":
                return None
            keep_alive = float(keep_alive)
        if keep_alive <= 0:
            return None
        return keep_alive

    def listen(self, host, port):
        sock = socket(AF_INET, SOCK_STREAM)
        sock.setsockopt(SOL_SOCKET, SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(self.BACKLOG)
        return sock

    @synchronized
    def log(self, caddr, method, uri, status, bytes_sent):
        if self.Logging:
            self.LogFile.write("{}: {} {} {} {} {}\n".format(
                    time.ctime(), caddr[0], method, uri, status, bytes_sent
            ))
            if self.LogFile is sys.stdout:
                self.LogFile.flush()

    @synchronized
    def logMessage(self, message):
        if self.Logging:
            self.LogFile.write("{}: {}\n".format(time.ctime(), message))
            if self.LogFile is sys.stdout:
                self.LogFile.flush()

    def urlMatch(self, path):
        return fnmatch.fnmatch(path, self.Match)

    def wsgi_app(self, env, start_response):
        return self.WSGIApp(env, start_response)

    def secureSocket(self, csock):
        return csock

    @synchronized
    def enableServer(self):
        self.Enabled = True

    @synchronized
    def disableServer(self):
        self.Enabled = False

    def connectionClosed(self, conn):
        pass

    def connectionsWaiting(self):
        return self.Connections.nwaiting() > 0

    def run(self):
        # PyThread.stop() sets self.Stop
        try:
            while not self.Stop:
                readable, _, _ = select.select([self.Sock], [], [], 1.0)
                if not readable:
                    continue
                csock, caddr = self.Sock.accept()
                if not self.Enabled:
                    csock.close()
                    continue
                self.Connections << HTTPConnection(self, csock, caddr)
        finally:
            self.Sock.close()


class HTTPSServer(HTTPServer):

    Scheme = "https"
    HANDSHAKE_TIMEOUT = 10.0

    def __init__(self, port, app, certfile, keyfile, password=None, **args):
        self.SSLContext = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        self.SSLContext.load_cert_chain(certfile, keyfile, password)
        HTTPServer.__init__(self, port, app, **args)

    def secureSocket(self, csock):
        csock.settimeout(self.HANDSHAKE_TIMEOUT)
        try:
            sock = self.SSLContext.wrap_socket(csock, server_side=True)
        except OSError:
            csock.close()
            raise
        sock.settimeout(None)
        return sock


def run_server(port, app, certfile=None, keyfile=None, **args):
    if certfile is not None:
        srv = HTTPSServer(port, app, certfile, keyfile, **args)
    else:
        srv = HTTPServer(port, app, **args)
    srv.start()
    srv.join()
