"""CouchDB Python 3 interface with completion callbacks, in a single module.

Every operation issues one HTTP request and reports its outcome by calling
`callback(result, error)` exactly once; errors are delivered as
`CouchError` instances, never raised.

Relies on 'requests': http://docs.python-requests.org/en/master/
"""

__version__ = "0.9.0"

# Standard packages
import collections
import concurrent.futures
import enum
import http.client
import json
import logging
import mimetypes
import os
import os.path
import threading
import urllib.parse

# Third-party package: https://docs.python-requests.org/en/master/
import requests
from requests.structures import CaseInsensitiveDict

JSON_MIME = "application/json"
BIN_MIME = "application/octet-stream"
FORM_MIME = "application/x-www-form-urlencoded"

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 5984
SECURED_PORT = 443

USER_PREFIX = "org.couchdb.user:"

# Accepted status codes per kind of operation.
OK = (200,)
WRITTEN = (201, 202)
DELETED = (200, 202)

# Codes of errors detected locally, without any HTTP status.
INTERNAL_ERROR = 0
INVALID_DOCUMENT = 1
INVALID_ATTACHMENT = 2

_logger = logging.getLogger("couchback")


class Connection(collections.namedtuple(
        "Connection", ["host", "port", "secured", "username", "password"])):
    """Immutable description of how to reach the CouchDB server.

    - `host` is the host name or IP address of the server.
    - `port` is the port number the server listens to.
    - If `secured` is `True`, then HTTPS is used.
    - `username` and `password` must be given together, or not at all.
    """

    __slots__ = ()

    def __new__(cls, host=DEFAULT_HOST, port=DEFAULT_PORT, secured=False,
                username=None, password=None):
        if (username is None) != (password is None):
            raise ValueError("username and password must be given together")
        return super().__new__(cls, host, int(port), bool(secured),
                               username, password)

    def __repr__(self):
        password = None if self.password is None else "***"
        return (f"Connection(host={self.host!r}, port={self.port}, "
                f"secured={self.secured}, username={self.username!r}, "
                f"password={password!r})")

    @classmethod
    def cloudant(cls, username, password):
        "Returns the connection to the Cloudant account of the given user."
        return cls(f"{username}.cloudant.com", SECURED_PORT, True,
                   username, password)

    @classmethod
    def from_url(cls, href, username=None, password=None):
        """Returns the connection for a server URL such as
        `http://localhost:5984/`. Credentials embedded in the URL are used,
        unescaped, unless `username` and `password` are given explicitly.
        """
        parts = urllib.parse.urlsplit(href)
        secured = parts.scheme == "https"
        port = parts.port or (SECURED_PORT if secured else DEFAULT_PORT)
        if username is None and password is None:
            if parts.username is not None:
                username = urllib.parse.unquote(parts.username)
            if parts.password is not None:
                password = urllib.parse.unquote(parts.password)
        return cls(parts.hostname or DEFAULT_HOST, port, secured,
                   username, password)

    @classmethod
    def from_settings(cls, settings):
        "Returns the connection described by a settings lookup."
        return cls.from_url(settings["SERVER"],
                            username=settings.get("USERNAME"),
                            password=settings.get("PASSWORD"))

    @property
    def base_url(self):
        "The URL of the server, without trailing slash."
        scheme = "https" if self.secured else "http"
        return f"{scheme}://{self.host}:{self.port}"

    @property
    def credentials(self):
        "The tuple `(username, password)`, or `None`."
        if self.username is None:
            return None
        return (self.username, self.password)


class Request(collections.namedtuple(
        "Request", ["method", "url", "headers", "body", "auth"])):
    "An outgoing HTTP request, as handed to the transport."

    __slots__ = ()

    @property
    def has_body(self):
        return self.body is not None


Response = collections.namedtuple("Response",
                                  ["status_code", "headers", "content"])
Response.__doc__ = "An HTTP response, as delivered by the transport."


def prepare_request(connection, method, path, body=None,
                    content_type=JSON_MIME, headers=None):
    """Returns the `Request` for the method and path on the server.

    The `Accept` header is always set; `Content-Type` only when a body
    is present. Credentials of the connection, if any, become the
    request's authentication.
    """
    all_headers = {"Accept": JSON_MIME}
    if body is not None:
        all_headers["Content-Type"] = content_type
    if headers:
        all_headers.update(headers)
    return Request(method, connection.base_url + path, all_headers, body,
                   connection.credentials)


class StaleOption(enum.Enum):
    "Whether a view may be served stale; see `Stale`."
    OK = "ok"
    UPDATE_AFTER = "update_after"


class QueryOption:
    "Base class of the view query options."

    name = None

    def __init__(self, value):
        self.value = value

    def __repr__(self):
        return f"{type(self).__name__}({self.value!r})"

    def __eq__(self, other):
        return type(self) is type(other) and self.value == other.value

    def __hash__(self):
        return hash((type(self), repr(self.value)))

    def fragment(self):
        "Returns the `name=value` fragment of the query string."
        return f"{self.name}={self.render()}"

    def render(self):
        raise NotImplementedError


class _BoolOption(QueryOption):

    def render(self):
        return _text(bool(self.value))


class _IntOption(QueryOption):

    def render(self):
        return str(int(self.value))


class _KeyOption(QueryOption):

    def render(self):
        return _key(self.value)


class _DocIDOption(QueryOption):

    def render(self):
        return f'"{_quote(self.value)}"'


class Conflicts(_BoolOption):
    "Include conflict information of the documents."
    name = "conflicts"


class Descending(_BoolOption):
    "Return the rows in descending key order."
    name = "descending"


class EndKey(_KeyOption):
    "Stop returning rows when this key is reached."
    name = "endkey"


class EndKeyDocID(_DocIDOption):
    "Stop returning rows when this document identifier is reached."
    name = "endkey_docid"


class Group(_BoolOption):
    "Group the results using the reduce function."
    name = "group"


class GroupLevel(_IntOption):
    "The group level to use."
    name = "group_level"


class IncludeDocs(_BoolOption):
    "Include the document of each row."
    name = "include_docs"


class Attachments(_BoolOption):
    "Include the attachment contents of included documents."
    name = "attachments"


class AttachmentEncodingInfo(_BoolOption):
    "Include encoding information of compressed attachments."
    name = "att_encoding_info"


class InclusiveEnd(_BoolOption):
    "Include the rows having the end key."
    name = "inclusive_end"


class Limit(_IntOption):
    "Limit the number of rows returned."
    name = "limit"


class Reduce(_BoolOption):
    "Whether to use the reduce function of the view."
    name = "reduce"


class Skip(_IntOption):
    "Skip this number of rows before returning rows."
    name = "skip"


class Stale(QueryOption):
    "Allow a stale view; the value is a `StaleOption`."
    name = "stale"

    def render(self):
        return f'"{StaleOption(self.value).value}"'


class StartKey(_KeyOption):
    "Return rows starting with this key."
    name = "startkey"


class StartKeyDocID(_DocIDOption):
    "Return rows starting with this document identifier."
    name = "start_key_doc_id"


class UpdateSequence(_BoolOption):
    "Include the update sequence of the view."
    name = "update_seq"


class Keys(QueryOption):
    """Return only rows having one of the given keys.

    A single key is sent as the `key` query parameter; any other number
    of keys is sent in the body of a POST request. A string is one key.
    """
    name = "key"

    def __init__(self, value):
        if isinstance(value, str):
            value = [value]
        super().__init__(list(value))

    @property
    def single(self):
        return len(self.value) == 1

    def render(self):
        return _key(self.value[0])


Query = collections.namedtuple("Query", ["query_string", "method", "body"])
Query.__doc__ = "The encoded form of a sequence of view query options."


def encode_query(options):
    """Encodes the sequence of `QueryOption` instances, in the given order.

    Returns a `Query` with the query string (empty, or starting with `?`),
    the HTTP method to use, and the JSON body to send, if any.
    """
    fragments = []
    keys = None
    for option in options:
        if isinstance(option, Keys) and not option.single:
            keys = option.value
        else:
            fragments.append(option.fragment())
    query_string = "?" + "&".join(fragments) if fragments else ""
    if keys is None:
        return Query(query_string, "GET", None)
    return Query(query_string, "POST", {"keys": keys})


def decode_response(response, accepted=OK, id=None, rev=None, raw=False):
    """Interprets the response of the server to a request.

    - `accepted` is the collection of status codes meaning success.
    - `id` and `rev` identify the document concerned, for the error.
    - If `raw` is `True`, then the data of a successful response is the
      body bytes, whatever its content type.

    Returns the tuple `(data, error)`; `error` is `None` on success,
    else `data` is `None`.
    """
    if response is None:
        return None, make_error(INTERNAL_ERROR, id=id, rev=rev)
    data = _body(response)
    if response.status_code in accepted:
        if raw:
            return response.content, None
        return data, None
    return None, make_error(response.status_code, data, id=id, rev=rev)


def _body(response):
    "Returns the parsed JSON body of the response, or the raw bytes."
    content_type = _header(response, "Content-Type") or ""
    if JSON_MIME not in content_type:
        return response.content
    if not response.content:
        return None
    try:
        return json.loads(response.content)
    except ValueError:
        return None


def _header(response, name):
    "Returns the value of the named header of the response, if any."
    return CaseInsensitiveDict(response.headers or {}).get(name)


class Transport:
    """Interface of the HTTP transport used by `Server`.

    A subclass must implement `send`. The default `submit` calls it in
    the current thread.
    """

    def send(self, request):
        """Performs the `Request`. Returns a `Response`, or `None` if no
        response at all was obtained.
        """
        raise NotImplementedError

    def submit(self, request, done):
        "Performs the request, then calls `done(response)` exactly once."
        self._perform(request, done)

    def close(self):
        "Releases the resources of the transport."

    def _perform(self, request, done):
        "Sends the request; any failure to do so means no response."
        try:
            response = self.send(request)
        except Exception:
            _logger.debug("%s %s not sent", request.method, request.url,
                          exc_info=True)
            response = None
        done(response)


class RequestsTransport(Transport):
    """Transport performing the requests in a pool of worker threads.

    Each worker thread has its own 'requests' session.
    """

    def __init__(self, max_workers=4, timeout=None, ca_file=None):
        """- `max_workers` is the number of concurrent requests.
        - `timeout` is passed on to 'requests' for each request.
        - `ca_file` is a path to a file or a directory containing CAs if
          you need to access databases in HTTPS.
        """
        self.timeout = timeout
        self.ca_file = ca_file
        self._local = threading.local()
        self._sessions = []
        self._lock = threading.Lock()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="couchback")

    @property
    def session(self):
        "The 'requests' session of the current thread."
        try:
            return self._local.session
        except AttributeError:
            session = requests.Session()
            if self.ca_file is not None:
                session.verify = self.ca_file
            with self._lock:
                self._sessions.append(session)
            self._local.session = session
            return session

    def send(self, request):
        try:
            response = self.session.request(request.method, request.url,
                                            headers=request.headers,
                                            data=request.body,
                                            auth=request.auth,
                                            timeout=self.timeout)
        except requests.RequestException:
            return None
        return Response(response.status_code, response.headers,
                        response.content)

    def submit(self, request, done):
        try:
            future = self._executor.submit(self._perform, request, done)
        except RuntimeError:
            # Closed transport.
            _logger.debug("%s %s not sent: transport closed",
                          request.method, request.url)
            done(None)
            return
        future.add_done_callback(_report_failure)

    def close(self):
        "Waits for pending requests, then closes the 'requests' sessions."
        self._executor.shutdown(wait=True)
        with self._lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()


def _report_failure(future):
    "Logs an exception raised by a completion callback in a worker thread."
    error = future.exception()
    if error is not None:
        _logger.error("Completion callback failed", exc_info=error)


class Server:
    "An instance of the class is a connection to the CouchDB server."

    def __init__(self, connection=None, transport=None):
        """- `connection` is a `Connection`; defaults to the local server.
        - `transport` performs the HTTP requests; defaults to a
          `RequestsTransport`.
        """
        self.connection = connection or Connection()
        self.transport = transport or RequestsTransport()

    def __str__(self):
        "Returns a simple string representation of the server interface."
        return f"CouchDB {self.connection.base_url}"

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        "Clean-up: Close the transport."
        self.transport.close()

    def database(self, name):
        "Returns the interface to the named database, without checking it."
        return Database(self, name)

    def users_database(self):
        "Returns the interface to the `_users` database."
        return UsersDatabase(self)

    def get_info(self, callback):
        "Gets the welcome document of the server, with its version."
        self._dispatch("GET", "/", callback)

    def create_db(self, name, callback):
        """Creates the named database. The result is its `Database`.
        Gives `CreationError` if it already exists.
        """
        self._dispatch("PUT", _path(name), callback, accepted=WRITTEN,
                       convert=lambda data, response: Database(self, name))

    def db_exists(self, name, callback):
        "Does the named database exist? The result is a boolean."
        self._dispatch("GET", _path(name), callback, accepted=(200, 404),
                       convert=_found)

    def delete_db(self, database, callback):
        """Deletes the database, given by name or `Database` instance, and
        all its contents. The result is `True`.
        """
        self._dispatch("DELETE", _path(str(database)), callback,
                       accepted=DELETED, convert=lambda data, response: True)

    def get_uuids(self, count, callback):
        "Gets a list of `count` UUIDs generated by the server."
        self._dispatch("GET", f"/_uuids?count={int(count)}", callback,
                       convert=_uuids)

    def get_uuid(self, callback):
        "Gets a single UUID generated by the server."
        self._dispatch("GET", "/_uuids?count=1", callback,
                       convert=lambda data, response: _uuids(data, response)[0])

    def get_config(self, callback, section=None, key=None):
        """Gets the configuration of the server; the named section of it,
        or the value of the key in the named section.
        """
        segments = ["_config"]
        if section is not None:
            segments.append(section)
            if key is not None:
                segments.append(key)
        self._dispatch("GET", _path(*segments), callback)

    def set_config(self, section, key, value, callback):
        """Sets the configuration value of the key in the named section.
        The result is the previous value.
        """
        if not isinstance(value, str):
            value = _text(value)
        self._dispatch("PUT", _path("_config", section, key), callback,
                       body=_jsons(value).encode("utf-8"))

    def create_session(self, name, password, callback):
        """Logs in the user. The result is a `SessionResult` holding the
        session cookie and the response document.
        """
        body = urllib.parse.urlencode({"name": name, "password": password})
        self._dispatch("POST", "/_session", callback,
                       body=body.encode("utf-8"), content_type=FORM_MIME,
                       id=USER_PREFIX + name, convert=_session)

    def get_session(self, cookie, callback):
        "Gets the session information of the cookie."
        self._dispatch("GET", "/_session", callback,
                       headers={"Cookie": cookie},
                       convert=lambda data, response: SessionResult(cookie,
                                                                    data))

    def delete_session(self, cookie, callback):
        "Logs out the session of the cookie."
        self._dispatch("DELETE", "/_session", callback,
                       headers={"Cookie": cookie}, convert=_session)

    def _dispatch(self, method, path, callback, body=None,
                  content_type=JSON_MIME, headers=None, accepted=OK,
                  convert=None, id=None, rev=None, raw=False):
        """Sends the request to the CouchDB server, and calls back with
        the result of `convert(data, response)` or the error.
        """
        request = prepare_request(self.connection, method, path, body=body,
                                  content_type=content_type, headers=headers)

        def done(response):
            data, error = decode_response(response, accepted,
                                          id=id, rev=rev, raw=raw)
            if error is None and convert is not None:
                try:
                    data = convert(data, response)
                except (AttributeError, LookupError, TypeError, ValueError):
                    data, error = None, make_error(INTERNAL_ERROR,
                                                   id=id, rev=rev)
            callback(data, error)

        _logger.debug("%s %s", method, request.url)
        self.transport.submit(request, done)

    def _dispatch_json(self, method, path, doc, callback, id=None, rev=None,
                       **kwargs):
        "Sends the document as JSON body, unless it cannot be serialized."
        body = _serialize(doc)
        if body is None:
            callback(None, make_error(INVALID_DOCUMENT, id=id, rev=rev))
            return
        self._dispatch(method, path, callback, body=body, id=id, rev=rev,
                       **kwargs)


class Database:
    "An instance of the class is an interface to a CouchDB database."

    def __init__(self, server, name):
        self.server = server
        self.name = name

    def __str__(self):
        "Returns the name of the CouchDB database."
        return self.name

    def __repr__(self):
        return f"<{type(self).__name__} {self.name!r}>"

    def create(self, doc, callback):
        """Creates a new document. The result is a `DocumentResult`
        holding the identifier and revision assigned by the server.
        """
        self.server._dispatch_json("POST", _path(self.name), doc, callback,
                                   accepted=WRITTEN, convert=_document_result)

    def retrieve(self, id, callback, rev=None):
        """Gets the document with the given identifier.

        - `rev`: Retrieves document of specified revision, if specified.
        """
        path = _path(self.name, id)
        if rev is not None:
            path += f"?rev={_quote(rev)}"
        self.server._dispatch("GET", path, callback, id=id, rev=rev)

    def update(self, id, rev, doc, callback):
        """Updates the document having the given identifier and current
        revision. The result is a `DocumentResult` with the new revision.
        """
        self.server._dispatch_json("PUT", _revised(_path(self.name, id), rev),
                                   doc, callback, id=id, rev=rev,
                                   accepted=WRITTEN, convert=_document_result)

    def delete(self, id, rev, callback, fail_on_not_found=False):
        """Deletes the document. The result is `True` if it was deleted.

        If the document does not exist, the result is `False`, unless
        `fail_on_not_found` is `True`; then a `NotFoundError` is given.
        """
        self._delete(_revised(_path(self.name, id), rev), callback,
                     id, rev, fail_on_not_found)

    def bulk(self, docs, callback, new_edits=None):
        """Performs a bulk update or insertion of the given documents using a
        single HTTP request.

        The result is a list containing a `BulkItem` for every element in
        the `docs` sequence, in the same order. Each item has either the
        new revision `rev` of the document, or the `error` and `reason`
        of its failure.

        If `new_edits` is `False`, then the server does not assign new
        revisions to the documents.
        """
        documents = []
        for doc in docs:
            document = _as_dict(doc)
            if document is None:
                callback(None, make_error(INVALID_DOCUMENT))
                return
            documents.append(document)
        content = {"docs": documents}
        if new_edits is not None:
            content["new_edits"] = bool(new_edits)
        self.server._dispatch_json("POST", _path(self.name, "_bulk_docs"),
                                   content, callback, accepted=WRITTEN,
                                   convert=_bulk_items)

    def retrieve_all(self, callback, options=()):
        """Gets the rows of all documents in the database. The `options`
        are `QueryOption` instances, e.g. `IncludeDocs(True)`.
        The result is a `ViewResult`.
        """
        self._query(_path(self.name, "_all_docs"), options, callback)

    def query_by_view(self, view, design, options, callback):
        """Queries the view of the named design document. The `options`
        are a sequence of `QueryOption` instances, encoded in order.

        The result is a `ViewResult`, containing the following attributes:

        - `rows`: the list of `Row` instances.
        - `offset`: the offset used for the set of rows.
        - `total_rows`: the total number of rows selected.
        - `update_seq`: the update sequence, if requested.
        """
        path = _path(self.name, "_design", design, "_view", view)
        self._query(path, options, callback)

    def create_design(self, name, doc, callback):
        """Inserts or updates the design document under the given name.

        Example of doc:
        ```
          {"views":
            {"name":
              {"map": "function (doc) {emit(doc.name, null);}"},
             "name_sum":
              {"map": "function (doc) {emit(doc.name, 1);}",
               "reduce": "_sum"}
          }}
        ```
        """
        self.server._dispatch_json("PUT", _path(self.name, "_design", name),
                                   doc, callback, id=name, accepted=WRITTEN,
                                   convert=_document_result)

    def retrieve_design(self, name, callback):
        "Gets the named design document."
        self.server._dispatch("GET", _path(self.name, "_design", name),
                              callback, id=name)

    def delete_design(self, name, rev, callback, fail_on_not_found=False):
        "Deletes the named design document; see `delete`."
        path = _revised(_path(self.name, "_design", name), rev)
        self._delete(path, callback, name, rev, fail_on_not_found)

    def create_attachment(self, id, rev, name, data, content_type, callback):
        """Adds or updates the attachment to the document having the given
        identifier and current revision.

        - `data` is bytes, a string or a file-like object.
        - If `content_type` is not provided, then an attempt to guess it from
          the attachment name extension is made. If that does not work, it is
          set to `"application/octet-stream"`

        The result is a `DocumentResult` with the new revision.
        """
        if hasattr(data, "read"):
            data = data.read()
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not isinstance(data, (bytes, bytearray)):
            callback(None, make_error(INVALID_ATTACHMENT, id=id, rev=rev))
            return
        if not content_type:
            (content_type, enc) = mimetypes.guess_type(name, strict=False)
            if not content_type: content_type = BIN_MIME
        path = _revised(_path(self.name, id, name), rev)
        self.server._dispatch("PUT", path, callback, body=bytes(data),
                              content_type=content_type, id=id, rev=rev,
                              accepted=WRITTEN, convert=_document_result)

    def retrieve_attachment(self, id, name, callback):
        """Gets the attachment of the document. The result is an
        `Attachment` holding the content bytes and its content type.
        """
        self.server._dispatch("GET", _path(self.name, id, name), callback,
                              id=id, raw=True, convert=_attachment)

    def delete_attachment(self, id, rev, name, callback,
                          fail_on_not_found=False):
        "Deletes the attachment of the document; see `delete`."
        path = _revised(_path(self.name, id, name), rev)
        self._delete(path, callback, id, rev, fail_on_not_found)

    def _delete(self, path, callback, id, rev, fail_on_not_found):
        accepted = DELETED if fail_on_not_found else DELETED + (404,)
        self.server._dispatch("DELETE", path, callback, accepted=accepted,
                              id=id, rev=rev, convert=_found)

    def _query(self, path, options, callback):
        query = encode_query(options)
        path += query.query_string
        if query.body is None:
            self.server._dispatch(query.method, path, callback,
                                  convert=_view_result)
        else:
            self.server._dispatch_json(query.method, path, query.body,
                                       callback, convert=_view_result)


class UsersDatabase(Database):
    "Interface to the `_users` database of the server."

    def __init__(self, server, name="_users"):
        super().__init__(server, name)

    def create_user(self, doc, callback):
        """Creates the user described by the document, which must contain
        the `name` item. See `new_user_document`.
        The result is a `DocumentResult`.
        """
        name = doc.get("name") if isinstance(doc, dict) else None
        if not isinstance(name, str):
            callback(None, make_error(INVALID_DOCUMENT))
            return
        id = USER_PREFIX + name
        self.server._dispatch_json("PUT", _path(self.name, id), doc, callback,
                                   id=id, accepted=WRITTEN,
                                   convert=_document_result)

    def retrieve_user(self, name, callback):
        "Gets the document of the named user."
        self.retrieve(USER_PREFIX + name, callback)

    def get_session_cookie(self, name, password, callback):
        "Logs in the user; see `Server.create_session`."
        self.server.create_session(name, password, callback)


def new_user_document(name, password, roles=(), type="user"):
    "Returns the document for creating a new user."
    return {"_id": USER_PREFIX + name,
            "name": name,
            "password": password,
            "roles": list(roles),
            "type": type}


DocumentResult = collections.namedtuple("DocumentResult", ["id", "rev", "raw"])

BulkItem = collections.namedtuple("BulkItem",
                                  ["id", "rev", "ok", "error", "reason"])

Row = collections.namedtuple("Row", ["id", "key", "value", "doc", "error"])

Attachment = collections.namedtuple("Attachment", ["content", "content_type"])

SessionResult = collections.namedtuple("SessionResult", ["cookie", "info"])


class ViewResult(object):
    """Result of view query; contains rows, offset, total_rows, update_seq.
    Instances of this class are not supposed to be created by client software.
    """

    def __init__(self, rows, offset, total_rows, update_seq=None):
        self.rows = rows
        self.offset = offset
        self.total_rows = total_rows
        self.update_seq = update_seq

    def __len__(self):
        return len(self.rows)

    def __getitem__(self, i):
        return self.rows[i]

    def __iter__(self):
        return iter(self.rows)

    def json(self):
        "Return data in a JSON-like representation."
        result = dict()
        result["total_rows"] = self.total_rows
        result["offset"] = self.offset
        if self.update_seq is not None:
            result["update_seq"] = self.update_seq
        result["rows"] = [dict((k, v) for k, v in row._asdict().items()
                               if v is not None)
                          for row in self.rows]
        return result


def _document_result(data, response):
    return DocumentResult(data.get("id"), data["rev"], data)


def _bulk_items(data, response):
    if not isinstance(data, list):
        raise ValueError("bulk response is not a list")
    return [BulkItem(r["id"], r.get("rev"), r.get("ok"),
                     r.get("error"), r.get("reason")) for r in data]


def _view_result(data, response):
    rows = [Row(r.get("id"), r.get("key"), r.get("value"), r.get("doc"),
                r.get("error")) for r in data.get("rows", [])]
    return ViewResult(rows, data.get("offset"), data.get("total_rows"),
                      data.get("update_seq"))


def _attachment(data, response):
    return Attachment(data, _header(response, "Content-Type"))


def _session(data, response):
    return SessionResult(_header(response, "Set-Cookie"), data)


def _uuids(data, response):
    return [str(u) for u in data["uuids"]]


def _found(data, response):
    return response.status_code != 404


class CouchError(Exception):
    """Base CouchBack error. Instances are handed to callbacks.

    - `code` is the HTTP status code, or one of the local error codes.
    - `description` is a human-readable description.
    - `id` and `rev` identify the document concerned, if any.
    """

    def __init__(self, code, description, id=None, rev=None):
        super().__init__(description)
        self.code = code
        self.description = description
        self.id = id
        self.rev = rev

    def __repr__(self):
        return (f"{type(self).__name__}({self.code!r}, "
                f"{self.description!r}, id={self.id!r}, rev={self.rev!r})")

    def __eq__(self, other):
        return type(self) is type(other) and self._fields() == other._fields()

    def __hash__(self):
        return hash((type(self), self._fields()))

    def _fields(self):
        return (self.code, self.description, self.id, self.rev)


class InternalError(CouchError):
    "No response was obtained from the server, or it was not understood."


class InvalidDocumentError(CouchError):
    "The document could not be serialized into a request body."


class InvalidAttachmentError(CouchError):
    "The attachment data is neither bytes nor text."


class HTTPError(CouchError):
    "The server responded with an unexpected HTTP status code."


class NotFoundError(HTTPError):
    "No such entity exists."


class BadRequestError(HTTPError):
    "Invalid request; bad name, body or headers."


class CreationError(HTTPError):
    "Could not create the entity; it exists already."


class RevisionError(HTTPError):
    "Wrong or missing revision of the document."


class AuthorizationError(HTTPError):
    "Current user not authorized to perform the operation."


class ContentTypeError(HTTPError):
    "Bad 'Content-Type' value in the request."


class ServerError(HTTPError):
    "Internal CouchDB server error."


_LOCAL_ERRORS = {INTERNAL_ERROR: (InternalError, "Internal Error"),
                 INVALID_DOCUMENT: (InvalidDocumentError,
                                    "Invalid Document Body"),
                 INVALID_ATTACHMENT: (InvalidAttachmentError,
                                      "Invalid attachment")}

_ERRORS = {400: BadRequestError,
           401: AuthorizationError,
           403: AuthorizationError,
           404: NotFoundError,
           409: RevisionError,
           412: CreationError,
           415: ContentTypeError,
           500: ServerError}


def make_error(code, body=None, id=None, rev=None):
    """Returns the `CouchError` for the local error code or HTTP status code.

    For an HTTP status, the description is taken from the `error` and
    `reason` items of the parsed response body when both are present,
    else from the standard name of the status code.
    """
    try:
        cls, description = _LOCAL_ERRORS[code]
    except KeyError:
        cls = _ERRORS.get(code, ServerError if code >= 500 else HTTPError)
        if isinstance(body, dict) and isinstance(body.get("error"), str) \
           and isinstance(body.get("reason"), str):
            description = f"Error: {body['error']}, reason: {body['reason']}"
        else:
            description = http.client.responses.get(code, str(code))
    return cls(code, description, id=id, rev=rev)


def _jsons(data, indent=None):
    "Convert data into JSON string."
    return json.dumps(data, ensure_ascii=False, indent=indent, allow_nan=False)


def _serialize(doc):
    "Returns the document as JSON body bytes, or None if that is impossible."
    doc = _as_dict(doc)
    if doc is None:
        return None
    try:
        return _jsons(doc).encode("utf-8")
    except (TypeError, ValueError):
        return None


def _as_dict(doc):
    "Returns the document as a dictionary, or None if it cannot be one."
    if isinstance(doc, dict):
        return doc
    elif hasattr(doc, "items"):
        return dict(doc.items())
    return None


def _quote(value):
    "Percent-escape the value, leaving no character unescaped."
    return urllib.parse.quote(str(value), safe="")


def _path(*segments):
    "Return the absolute path of the escaped segments."
    return "/" + "/".join(_quote(s) for s in segments)


def _revised(path, rev):
    return f"{path}?rev={_quote(rev)}"


def _text(value):
    "Return the textual form of a value in a query string."
    if value is True:
        return "true"
    if value is False:
        return "false"
    if value is None:
        return "null"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_text(v) for v in value) + "]"
    if isinstance(value, dict):
        return _jsons(value)
    return str(value)


def _key(value):
    "Return the query string form of a key; a string is escaped and quoted."
    if isinstance(value, str):
        return f'"{_quote(value)}"'
    return _text(value)


DEFAULT_SETTINGS = {"SERVER": "http://localhost:5984",
                    "DATABASE": None,
                    "USERNAME": None,
                    "PASSWORD": None}

DEFAULT_SETTINGS_FILEPATHS = ["~/.couchback", "settings.json"]

_SETTINGS_PREFIXES = ["", "COUCHDB_", "COUCHBACK_"]


def read_settings(filepath, settings=None):
    """Read the settings lookup from a JSON format file.
    If `settings` is given, then return an updated copy of it,
    else copy the default settings, update, and return.
    """
    if settings:
        result = settings.copy()
    else:
        result = DEFAULT_SETTINGS.copy()
    with open(os.path.expanduser(filepath), "rb") as infile:
        data = json.load(infile)
        for key in DEFAULT_SETTINGS:
            for prefix in _SETTINGS_PREFIXES:
                try:
                    result[key] = data[prefix + key]
                except KeyError:
                    pass
    return result


def get_settings(filepaths=None):
    """Get the settings lookup.
    1) Initialize with DEFAULT_SETTINGS
    2) Update with values in the JSON files `filepaths`, if any;
       defaults to DEFAULT_SETTINGS_FILEPATHS.
    3) Update from environment variables.
    """
    settings = DEFAULT_SETTINGS.copy()
    if filepaths is None:
        filepaths = DEFAULT_SETTINGS_FILEPATHS
    for filepath in filepaths:
        try:
            settings = read_settings(filepath, settings=settings)
            _logger.debug("Settings read from file %s", filepath)
        except IOError:
            _logger.debug("No settings file %s", filepath)
    for key in DEFAULT_SETTINGS:
        for prefix in _SETTINGS_PREFIXES:
            try:
                settings[key] = os.environ[prefix + key]
            except KeyError:
                pass
    return settings
