#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Usage::
\x0c
    gated-git-server [--port PORT] [--server-temp-dir DIR]
                     [--username NAME] [--password SECRET]
                     [--host HOST] [--debug]


    Environment options (flags win over these):

        GIT_PORT <port>
            Port number; defaults to 3000

        GIT_SERVER_TEMP_DIR <path>
            Directory holding the bare repos, exported as
            $GIT_PROJECT_ROOT; defaults to $TMPDIR/git and is created if
            missing. Repos are addressed by their path below it, e.g.,
            http://localhost:3000/myrepo.git

        GIT_USERNAME <str>
        GIT_PASSWORD <str>
            The single principal allowed in via "basic access"
            authentication; default to testuser and testpass

        GIT_HOST <hostname>
            Address to bind; defaults to all interfaces

        GIT_DEBUG
            Print verbose logging info for every request/response

        GIT_EXEC_PATH <path>
            Dir containing git-http-backend; defaults to the output of
            ``git --exec-path``
\x0c

Notes
-----

Every request must carry credentials matching the configured pair. Anything
else (no header, some other scheme, garbage base64, wrong user or password)
gets the same ``401`` with a ``Basic realm="Restricted"`` challenge and never
reaches git-http-backend. Admitted requests are tagged with an
``X-Remote-User`` header, which becomes ``$REMOTE_USER`` for the CGI program.
Since git-http-backend only enables ``receive-pack`` for authenticated users,
that's what makes pushing work.

Each admitted request spawns one git-http-backend process. See
git-http-backend(1) and rfc3875_ for what goes into its environment.

.. _rfc3875: http://www.ietf.org/rfc/rfc3875

"""

# Author: Jane Soko
# License: Apache License 2.0
# Portions derived from Python modules may apply other terms.
# See <https://docs.python.org/3/license.html> for details.

import os
import sys
import hmac
import base64
import binascii

from collections import namedtuple
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from subprocess import check_output, Popen, PIPE, CalledProcessError

__version__ = "0.1.0"

REALM = "Restricted"

REMOTE_USER_HEADER = "X-Remote-User"

ENVVAR_PREFIX = "GIT_"

FALLBACK_EXEC_DIRS = (
    "/usr/libexec/git-core",
    "/usr/lib/git-core",
    "/usr/local/libexec/git-core",
)

Credentials = namedtuple("Credentials", "username password")

Config = namedtuple(
    "Config", "port server_temp_dir username password host debug"
)


class AuthenticationError(Exception):
    """Request may not pass the gate"""


class AuthenticationMissing(AuthenticationError):
    """No usable Basic credentials in request"""


class AuthenticationInvalid(AuthenticationError):
    """Well-formed credentials that don't match"""


class BackendNotFound(RuntimeError):
    pass


def parse_basic_auth(authorization):
    """Return (username, password) from an Authorization field value

    Anything unusable raises AuthenticationMissing: an absent or empty
    value, a scheme other than Basic (case-insensitive), invalid base64,
    non-UTF-8 bytes, or no colon. The password is everything after the
    first colon and may itself contain colons.
    """
    if not authorization:
        raise AuthenticationMissing("No authorization header")
    scheme, _, authval = authorization.partition(" ")
    if scheme.lower() != "basic":
        raise AuthenticationMissing("Auth type %r not supported" % scheme)
    try:
        decoded = base64.b64decode(authval, validate=True).decode("utf-8")
    except (binascii.Error, ValueError) as err:
        # ValueError covers non-ASCII input and UnicodeDecodeError
        raise AuthenticationMissing("Problem decoding credentials: %s" % err)
    username, sep, password = decoded.partition(":")
    if not sep:
        raise AuthenticationMissing("Credentials lack a colon")
    return username, password


def _same(received, saved):
    return hmac.compare_digest(received.encode("utf-8", "surrogateescape"),
                               saved.encode("utf-8", "surrogateescape"))


class BasicAuth(object):
    """HTTP Basic Authentication gate for a single principal

    Credentials are taken verbatim. An instance holds nothing else, so one
    gate may be shared by any number of handler threads.
    """

    realm = REALM

    def __init__(self, username, password, debug=False):
        self.credentials = Credentials(username, password)
        self.debug = debug

    def check(self, authorization):
        """Return authenticated username or raise AuthenticationError"""
        username, password = parse_basic_auth(authorization)
        # Non-short-circuiting so a bad user costs the same as a bad pass
        if not (_same(username, self.credentials.username)
                & _same(password, self.credentials.password)):
            raise AuthenticationInvalid(
                "Credentials rejected for user %r" % username
            )
        return username

    def consume_and_exhaust(self, handler, limit=2 ** 16):
        """Read and discard a small request body

        Closing with unread data pending makes the kernel reset the
        connection, and the client may lose the 401 along with it.
        Larger or chunked bodies are left alone, as are bodies the client
        is still holding back for a ``100 Continue``.
        """
        if handler.headers.get("expect", "").lower() == "100-continue":
            return
        try:
            length = int(handler.headers.get("content-length") or 0)
        except ValueError:
            return
        if 0 < length <= limit:
            handler.rfile.read(length)

    def unauthorized(self, handler):
        """Send the challenge and ask handler to drop the connection

        The response is the same whatever went wrong.
        """
        self.consume_and_exhaust(handler)
        body = b"Unauthorized\n"
        handler.send_response(HTTPStatus.UNAUTHORIZED)
        handler.send_header("WWW-Authenticate", 'Basic realm="%s"' % self.realm)
        handler.send_header("Content-Type", "text/plain; charset=utf-8")
        handler.send_header("Content-Length", str(len(body)))
        handler.send_header("Connection", "close")
        handler.end_headers()
        if handler.command != "HEAD":
            handler.wfile.write(body)
        handler.wfile.flush()
        handler.close_connection = True

    def wrap(self, handler_class):
        """Return a subclass of handler_class that checks auth first

        handler_class is any ``BaseHTTPRequestHandler`` subclass. The
        check runs in ``parse_request``, so a rejected request never gets
        as far as a ``do_*`` method. For HTTP/1.1 handlers it also runs
        before any ``100 Continue`` goes out.
        """
        gate = self

        class Gated(handler_class):
            def admit(self):
                """Tag request with user and return True, or send 401"""
                try:
                    username = gate.check(self.headers.get("authorization"))
                except AuthenticationError as err:
                    if gate.debug:
                        self.log_message("%s: %s", type(err).__name__, err)
                    gate.unauthorized(self)
                    return False
                del self.headers[REMOTE_USER_HEADER]
                self.headers[REMOTE_USER_HEADER] = username
                return True

            def handle_expect_100(self):
                # Called from within parse_request
                if not self.admit():
                    return False
                return super(Gated, self).handle_expect_100()

            def parse_request(self):
                rv = super(Gated, self).parse_request()
                if rv is not True:
                    return rv
                return self.admit()

        Gated.__name__ = Gated.__qualname__ = handler_class.__name__
        Gated.__module__ = handler_class.__module__
        Gated.__doc__ = handler_class.__doc__
        return Gated


def _boolify_envvar(val):
    """Interpret boolean environment variables.
    True whenever set/exported, even if value is an empty string,
    "null", or "none".
    """
    falsey = ("false", "nil", "no", "off", "0")
    return (val if val is not None else "false").lower() not in falsey


def envvar_name(field):
    """Map a Config field to its environment variable, e.g., GIT_PORT"""
    return ENVVAR_PREFIX + field.upper().replace("-", "_")


def get_defaults():
    import tempfile

    return dict(
        port=3000,
        server_temp_dir=os.path.join(tempfile.gettempdir(), "git"),
        username="testuser",
        password="testpass",
        host="",
        debug=False,
    )


def get_arg_parser():
    from argparse import ArgumentParser, RawDescriptionHelpFormatter

    parser = ArgumentParser(
        prog="gated-git-server",
        description="Serve Git repos over HTTP behind basic auth",
        epilog=__doc__.split("\x0c")[1].split("\n\n\n", 1)[-1],
        formatter_class=RawDescriptionHelpFormatter,
    )
    # Defaults are None so unset flags don't clobber env vars
    parser.add_argument("--port", type=int, help="port to listen on")
    parser.add_argument(
        "--server-temp-dir", help="directory containing the bare repos"
    )
    parser.add_argument("--username", help="username to require")
    parser.add_argument("--password", help="password to require")
    parser.add_argument("--host", help="address to bind")
    parser.add_argument(
        "--debug", action="store_true", default=None, help="verbose logging"
    )
    parser.add_argument(
        "--version", action="version", version="%(prog)s " + __version__
    )
    return parser


def load_config(argv=None, environ=None):
    """Return a Config built from defaults, env vars, and flags

    Flags take precedence over env vars, which take precedence over
    defaults. Nothing here touches module state.
    """
    if environ is None:
        environ = os.environ
    settings = get_defaults()

    for key, default in list(settings.items()):
        name = envvar_name(key)
        if name not in environ:
            continue
        val = environ[name]
        if isinstance(default, bool):
            settings[key] = _boolify_envvar(val)
        elif isinstance(default, int):
            try:
                settings[key] = int(val)
            except ValueError:
                raise ValueError("Invalid integer for %s: %r" % (name, val))
        else:
            settings[key] = val

    args = get_arg_parser().parse_args(argv)
    settings.update((k, v) for k, v in vars(args).items() if v is not None)
    return Config(**settings)


def get_libexec_dir(environ=None):
    """Return path to dir containing Git plumbing exes, or None"""
    if environ is None:
        environ = os.environ
    if environ.get("GIT_EXEC_PATH"):
        return environ["GIT_EXEC_PATH"]
    try:
        out_path = check_output(("git", "--exec-path"))
    except (OSError, CalledProcessError) as err:
        print("Could not run git --exec-path: %s" % err, file=sys.stderr)
        return None
    return out_path.decode().strip()


def find_http_backend(environ=None):
    """Return abspath of git-http-backend

    Try the exec dir reported by Git first, then a few usual suspects.
    """
    libexec = get_libexec_dir(environ)
    dirs = ((libexec,) if libexec else ()) + FALLBACK_EXEC_DIRS
    for dirname in dirs:
        candidate = os.path.join(dirname, "git-http-backend")
        if os.path.isfile(candidate):
            return candidate
    raise BackendNotFound(
        "git-http-backend not found in any of: %s" % ", ".join(dirs)
    )


def parse_cgi_output(output):
    """Split raw CGI stdout into status, reason, headers, and body

    Headers end at the first blank line, whichever line ending the
    script uses. A ``Status`` field, if present, supplies the code; a
    malformed one raises ValueError.
    """
    ends = [(output.find(s), s) for s in (b"\r\n\r\n", b"\n\n")]
    ends = [e for e in ends if e[0] != -1]
    if not ends:
        return HTTPStatus.OK, None, [], output
    index, sep = min(ends)
    head, body = output[:index], output[index + len(sep):]

    status, reason, headers = HTTPStatus.OK, None, []
    for line in head.decode("latin-1").splitlines():
        name, colon, value = line.partition(":")
        if not colon:
            continue
        name, value = name.strip(), value.strip()
        if name.lower() == "status":
            code, _, reason = value.partition(" ")
            if not (len(code) == 3 and code.isdigit()):
                raise ValueError("Bad CGI status line: %r" % value)
            status, reason = int(code), reason or None
        elif name.lower() != "content-length":
            headers.append((name, value))
    return status, reason, headers, body


class GitBackendHandler(BaseHTTPRequestHandler):
    """A CGI handler for git-http-backend

    ``config`` and ``backend`` are bound by ``make_server``.
    """

    server_version = "GatedGitServer/" + __version__
    config = None
    backend = None

    def dlog(self, tag, **kwargs):
        """Print one k/v pair per line below standard heading

        Calls ``.log_message`` to do the actual printing.

        """
        if not self.config.debug:
            raise RuntimeError("DEBUG is OFF but dlog called")
        caller = sys._getframe().f_back.f_code.co_name
        first = "{}()".format(caller)
        if tag:
            first = "{} - {}".format(first, tag)
        out = [first]
        if kwargs:
            maxlen = max(len(k) for k in kwargs) + 1
            out += [
                "{:2}{:<{w}} {!r}".format("", "%s:" % k, v, w=maxlen)
                for k, v in kwargs.items()
            ]
        self.log_message("%s", "\n".join(out))

    def log_exception(self, msg=None):
        import traceback
        formatted = traceback.format_exc()
        self.log_error("%s", "%s\n%s" % (msg, formatted) if msg else formatted)

    def do_GET(self):
        self.run_cgi()

    def do_POST(self):
        self.run_cgi()

    def read_chunked(self):
        """Return de-chunked request body

        Raises ValueError when a chunk-size line isn't hex.
        """
        chunks = []
        while True:
            size_line = self.rfile.readline()
            try:
                size = int(size_line.split(b";", 1)[0].strip(), 16)
            except ValueError:
                raise ValueError("Bad chunk size line: %r" % size_line)
            if size == 0:
                break
            chunks.append(self.rfile.read(size))
            self.rfile.readline()  # CRLF
        # Trailers, if any, end with a blank line
        while self.rfile.readline() not in (b"\r\n", b"\n", b""):
            pass
        return b"".join(chunks)

    def read_body(self):
        """Return request body as bytes or None if there isn't one"""
        if "chunked" in self.headers.get("transfer-encoding", "").lower():
            return self.read_chunked()
        try:
            nbytes = int(self.headers.get("content-length") or 0)
        except ValueError:
            nbytes = 0
        return self.rfile.read(nbytes) if nbytes > 0 else None

    def _populate_envvars(self, body):
        """Return CGI-related env vars

        This takes request header fields and parsed-path info and sets
        env vars required by rfc3875_ and git-http-backend(1).

        .. _rfc3875: https://tools.ietf.org/html/rfc3875#section-4.1
        """
        from urllib.parse import unquote

        full_env = dict(os.environ)

        path, _, query = self.path.partition("?")
        cgi_env = {
            "GIT_PROJECT_ROOT": self.config.server_temp_dir,
            "GIT_HTTP_EXPORT_ALL": "1",
            "GIT_HTTP_MAX_REQUEST_BUFFER": "1000M",
            "GATEWAY_INTERFACE": "CGI/1.1",
            "SERVER_SOFTWARE": self.version_string(),
            "SERVER_NAME": self.server.server_name,
            "SERVER_PORT": str(self.server.server_port),
            "SERVER_PROTOCOL": self.protocol_version,
            "REQUEST_METHOD": self.command,
            "SCRIPT_NAME": "",
            "PATH_INFO": unquote(path),
            "QUERY_STRING": query,
            "REMOTE_ADDR": self.client_address[0],
        }

        remote_user = self.headers.get(REMOTE_USER_HEADER)
        if remote_user:
            cgi_env["AUTH_TYPE"] = "Basic"
            cgi_env["REMOTE_USER"] = remote_user

        content_type = self.headers.get("content-type")
        if content_type:
            cgi_env["CONTENT_TYPE"] = content_type
        if body is not None:
            cgi_env["CONTENT_LENGTH"] = str(len(body))

        skipped = ("authorization", "proxy", "content-type",
                   "content-length", "transfer-encoding")
        for name, value in self.headers.items():
            if name.lower() in skipped:
                continue
            key = "HTTP_" + name.upper().replace("-", "_")
            # Repeated fields get folded into one
            if key in cgi_env:
                cgi_env[key] = "%s, %s" % (cgi_env[key], value)
            else:
                cgi_env[key] = value

        # Our own settings and stale CGI vars from the parent
        stale = set(envvar_name(f) for f in Config._fields)
        stale.update(("CONTENT_LENGTH", "CONTENT_TYPE"))
        for key in list(full_env):
            if key in stale or key.startswith("HTTP_"):
                del full_env[key]

        self.config.debug and self.dlog("envvars", **cgi_env)
        full_env.update(cgi_env)
        return full_env

    def run_cgi(self):
        """Send input to git-http-backend, return output to client"""
        if self.config.debug:
            self.dlog("headers", **dict(
                (k, v) for k, v in self.headers.items()
                if k.lower() != "authorization"
            ))
        try:
            body = self.read_body()
        except ValueError as err:
            self.log_error("E: %s", err)
            self.close_connection = True
            self.send_error(HTTPStatus.BAD_REQUEST, "Malformed request body")
            return
        env = self._populate_envvars(body)

        try:
            proc = Popen(
                [self.backend],
                stdin=PIPE,
                stdout=PIPE,
                stderr=PIPE,
                env=env,
                cwd=self.config.server_temp_dir,
            )
        except OSError:
            self.log_exception("E: Problem running git-http-backend")
            self.send_error(
                HTTPStatus.INTERNAL_SERVER_ERROR,
                "Problem running git-http-backend",
            )
            return
        stdout, stderr = proc.communicate(input=body)

        if stderr:
            self.log_error("E: Got unexpected stderr: %r", stderr)
        if proc.returncode:
            self.log_error("E: CGI script exit status %#x", proc.returncode)
        else:
            self.config.debug and self.dlog(
                "subprocess", exit_status=proc.returncode
            )

        if not stdout and proc.returncode:
            self.send_error(
                HTTPStatus.INTERNAL_SERVER_ERROR, "git-http-backend failed"
            )
            return

        try:
            status, reason, headers, payload = parse_cgi_output(stdout)
        except ValueError as err:
            self.log_error("E: %s", err)
            self.send_error(HTTPStatus.BAD_GATEWAY, "Bad output from backend")
            return
        self.send_response(status, reason)
        for name, value in headers:
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)
        self.wfile.flush()


def make_server(config, backend=None):
    """Return a threading server with the gate in front of the backend

    Nothing is read from the environment unless backend is None, in which
    case it's looked up with ``find_http_backend``.
    """
    if backend is None:
        backend = find_http_backend()
    if not os.path.isdir(config.server_temp_dir):
        os.makedirs(config.server_temp_dir)

    handler_class = type(
        "GitBackendHandler",
        (GitBackendHandler,),
        {"config": config, "backend": backend},
    )
    gate = BasicAuth(config.username, config.password, debug=config.debug)
    return ThreadingHTTPServer(
        (config.host, config.port), gate.wrap(handler_class)
    )


def register_signals(server, signames):
    """Make each named signal close server and exit

    Names may omit the ``SIG`` prefix; ones this platform lacks are
    skipped. Returns a dict of signal number to the handler it replaced.
    """
    import signal

    numxsig = {}
    for name in signames:
        name = name.upper()
        if not name.startswith("SIG"):
            name = "SIG" + name
        if hasattr(signal, name):
            numxsig[getattr(signal, name)] = name

    def handle_quit_signal(signo, frame):
        server.server_close()
        print("\nReceived %s, quitting..." % numxsig[signo], file=sys.stderr)
        sys.exit(0)

    return {num: signal.signal(num, handle_quit_signal) for num in numxsig}


def serve(server, name="Git services"):
    """Run server until shutdown or a quit signal, with banners on stderr

    Signal handlers in place beforehand are restored on the way out.
    """
    import signal
    from time import strftime

    previous = register_signals(server, ("TERM", "HUP", "INT"))

    # Same layout as ``BaseHTTPRequestHandler.log_message``
    banner = "{0} - - [{1}] {2} serving %s on {0} over port {3}" % name
    time_fmt = "%d/%b/%Y %H:%M:%S"
    host, port = server.socket.getsockname()[:2]
    print(banner.format(host, strftime(time_fmt), "Started", port),
          file=sys.stderr)
    print("{} - - [{}] PID: {}".format(host, strftime(time_fmt), os.getpid()),
          file=sys.stderr)
    print("\nHit Ctrl-C to exit.\n", file=sys.stderr)
    sys.stderr.flush()

    try:
        server.serve_forever()
    finally:
        print("\n" + banner.format(host, strftime(time_fmt), "Stopped", port),
              file=sys.stderr)
        server.server_close()
        for num, handler in previous.items():
            signal.signal(num, handler)


def main(argv=None):
    """Build config from environment and flags and call serve()

    Returns an exit status: 2 for a bad setting, 1 when git-http-backend
    can't be found.
    """
    try:
        config = load_config(argv)
    except ValueError as err:
        print("E: %s" % err, file=sys.stderr)
        return 2
    try:
        server = make_server(config)
    except BackendNotFound as err:
        print("E: %s" % err, file=sys.stderr)
        return 1
    serve(server)
    return 0


if __name__ == "__main__":
    sys.exit(main())


# Copyright 2016 Jane Soko <boynamedjane@misled.ml>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
