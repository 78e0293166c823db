"""
Console opener over the Kubernetes exec API.

Node consoles are served by conman inside the cray-console-node pods; the
cray-console-operator knows which of those pods owns a given node. Opening
a console is therefore two exec calls:

    1. operator pod: /app/get-node <xname>    -> {"podname": "cray-console-node-N"}
    2. that pod:     conman -j <xname>         (stdin + tty, relayed)

Exec streams use the v4.channel.k8s.io websocket subprotocol: each binary
frame starts with a channel byte (0 stdin, 1 stdout, 2 stderr, 3 status,
4 resize) followed by the payload.
"""

import contextlib
import json
import logging
import os
import ssl
import tempfile
from typing import Callable, Iterator, List, Optional, Tuple
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import ClientConnection, connect

from ..client.vault import KubeCredentials
from ..errors import CsmError, StreamClosed, TargetUnreachable
from ..xname import Xname
from .bridge import ConsoleOpener, RemoteStream

logger = logging.getLogger(__name__)

SUBPROTOCOL = "v4.channel.k8s.io"

STDIN = 0
STDOUT = 1
STDERR = 2
STATUS = 3
RESIZE = 4

KUBE_API_SERVER_NAME = "kube-apiserver"
OPERATOR_SELECTOR = "app.kubernetes.io/name=cray-console-operator"
OPERATOR_CONTAINER = "cray-console-operator"
NODE_CONTAINER = "cray-console-node"


def encode_frame(channel: int, data: bytes) -> bytes:
    return bytes([channel]) + data


def decode_frame(frame) -> Tuple[int, bytes]:
    if isinstance(frame, str):
        frame = frame.encode("utf-8")
    if not frame:
        raise ValueError("empty exec frame")
    return frame[0], bytes(frame[1:])


def exec_url(
    api_url: str,
    namespace: str,
    pod: str,
    container: str,
    command: List[str],
    stdin: bool = False,
    tty: bool = False,
) -> str:
    """websocket URL of a pod exec call."""
    base = api_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    params = [("container", container)]
    params += [("command", part) for part in command]
    params += [
        ("stdin", str(stdin).lower()),
        ("stdout", "true"),
        ("stderr", "true"),
        ("tty", str(tty).lower()),
    ]
    return f"{base}/api/v1/namespaces/{namespace}/pods/{pod}/exec?{urlencode(params)}"


class ExecStream(RemoteStream):
    """RemoteStream over one exec websocket."""

    def __init__(self, connection: ClientConnection, xname: Xname = None):
        self.connection = connection
        self.xname = xname
        self.exit_status: Optional[dict] = None

    def send(self, data: bytes) -> None:
        try:
            self.connection.send(encode_frame(STDIN, data))
        except WebSocketException as e:
            raise StreamClosed(self.xname, str(e))

    def recv(self, timeout: float = None) -> Optional[bytes]:
        try:
            message = self.connection.recv(timeout=timeout, decode=False)
        except TimeoutError:
            return None
        except ConnectionClosed:
            return b""
        except WebSocketException as e:
            raise StreamClosed(self.xname, str(e))

        try:
            channel, payload = decode_frame(message)
        except ValueError as e:
            raise StreamClosed(self.xname, str(e))
        if channel in (STDOUT, STDERR):
            return payload or None
        if channel == STATUS:
            self.exit_status = self._parse_status(payload)
            return b""
        return None

    def _parse_status(self, payload: bytes) -> dict:
        try:
            status = json.loads(payload.decode("utf-8") or "{}")
        except (UnicodeDecodeError, ValueError):
            status = {"status": "Unknown"}
        if status.get("status") not in (None, "Success"):
            logger.warning(f"Remote command ended: {status.get('message') or status.get('status')}")
        return status

    def resize(self, columns: int, rows: int) -> None:
        payload = json.dumps({"Width": columns, "Height": rows}).encode("utf-8")
        try:
            self.connection.send(encode_frame(RESIZE, payload))
        except WebSocketException as e:
            raise StreamClosed(self.xname, str(e))

    def close(self) -> None:
        self.connection.close()

    def read_all(self, timeout: float) -> bytes:
        """Collect output until the command ends."""
        chunks = []
        while True:
            data = self.recv(timeout=timeout)
            if data is None:
                raise TimeoutError(f"no output within {timeout}s")
            if not data:
                return b"".join(chunks)
            chunks.append(data)


@contextlib.contextmanager
def pem_files(credentials: KubeCredentials) -> Iterator[Tuple[str, str, str]]:
    """Write the PEM material to a private temporary directory."""
    with tempfile.TemporaryDirectory(prefix="csm-console-") as directory:
        paths = []
        for name, content in (
            ("ca.pem", credentials.ca_pem),
            ("client.pem", credentials.client_cert_pem),
            ("client-key.pem", credentials.client_key_pem),
        ):
            path = os.path.join(directory, name)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
            paths.append(path)
        yield paths[0], paths[1], paths[2]


class _ServerNameAdapter(HTTPAdapter):
    """Verifies the API server certificate against a fixed name."""

    def __init__(self, server_hostname: str, **kwargs):
        self.server_hostname = server_hostname
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["server_hostname"] = self.server_hostname
        kwargs["assert_hostname"] = self.server_hostname
        super().init_poolmanager(*args, **kwargs)


class KubernetesExecOpener(ConsoleOpener):
    """Opens node consoles through the cluster API server."""

    def __init__(
        self,
        api_url: str,
        credentials_source: Callable[[], KubeCredentials],
        namespace: str = "services",
        server_hostname: Optional[str] = KUBE_API_SERVER_NAME,
        proxy_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.api_url = api_url.rstrip("/")
        self.credentials_source = credentials_source
        self.namespace = namespace
        self.server_hostname = server_hostname
        self.proxy_url = proxy_url
        self.timeout = timeout

    @classmethod
    def from_clients(cls, clients) -> "KubernetesExecOpener":
        config = clients.config
        if not config.k8s_api_url:
            raise TargetUnreachable("-", "no k8s_api_url configured")
        if clients.vault is None:
            raise TargetUnreachable("-", "no vault_url/site_name configured for cluster credentials")

        def fetch_credentials() -> KubeCredentials:
            return clients.vault.kube_credentials(clients.credentials.current())

        return cls(
            config.k8s_api_url,
            fetch_credentials,
            namespace=config.console_namespace,
            proxy_url=config.proxy_url,
            timeout=config.request_timeout,
        )

    def open(self, xname: Xname) -> RemoteStream:
        try:
            credentials = self.credentials_source()
        except CsmError as e:
            raise TargetUnreachable(xname, f"cluster credentials: {e}")

        try:
            with pem_files(credentials) as (ca_path, cert_path, key_path):
                ssl_context = ssl.create_default_context(cafile=ca_path)
                ssl_context.load_cert_chain(cert_path, key_path)
                operator_pod = self._operator_pod(ca_path, cert_path, key_path)
            node_pod = self._console_node_pod(ssl_context, operator_pod, xname)
            logger.info(f"Console for {xname} served by {node_pod}")
            connection = self._connect(
                ssl_context, node_pod, NODE_CONTAINER, ["conman", "-j", str(xname)], stdin=True, tty=True
            )
        except (requests.RequestException, WebSocketException, ssl.SSLError, OSError, ValueError) as e:
            raise TargetUnreachable(xname, str(e))
        return ExecStream(connection, xname)

    def _http_session(self, ca_path: str, cert_path: str, key_path: str) -> requests.Session:
        session = requests.Session()
        session.verify = ca_path
        session.cert = (cert_path, key_path)
        if self.proxy_url:
            session.proxies = {"http": self.proxy_url, "https": self.proxy_url}
        if self.server_hostname:
            session.mount("https://", _ServerNameAdapter(self.server_hostname))
        return session

    def _operator_pod(self, ca_path: str, cert_path: str, key_path: str) -> str:
        url = f"{self.api_url}/api/v1/namespaces/{self.namespace}/pods"
        with self._http_session(ca_path, cert_path, key_path) as session:
            response = session.get(url, params={"labelSelector": OPERATOR_SELECTOR}, timeout=self.timeout)
            response.raise_for_status()
            pods = response.json().get("items") or []
        for pod in pods:
            if (pod.get("status") or {}).get("phase") == "Running":
                return pod["metadata"]["name"]
        raise ValueError(f"no running console operator pod in namespace {self.namespace}")

    def _console_node_pod(self, ssl_context: ssl.SSLContext, operator_pod: str, xname: Xname) -> str:
        connection = self._connect(
            ssl_context, operator_pod, OPERATOR_CONTAINER, ["sh", "-c", f"/app/get-node {xname}"]
        )
        stream = ExecStream(connection, xname)
        try:
            output = stream.read_all(self.timeout).decode("utf-8").strip()
        finally:
            stream.close()
        try:
            return json.loads(output)["podname"]
        except (ValueError, KeyError, TypeError):
            raise ValueError(f"console operator gave no pod for {xname}: {output[:200]!r}")

    def _connect(
        self,
        ssl_context: ssl.SSLContext,
        pod: str,
        container: str,
        command: List[str],
        stdin: bool = False,
        tty: bool = False,
    ) -> ClientConnection:
        url = exec_url(self.api_url, self.namespace, pod, container, command, stdin=stdin, tty=tty)
        kwargs = {}
        if self.proxy_url:
            kwargs["proxy"] = self.proxy_url
        logger.debug(f"exec {pod}/{container}: {' '.join(command)}")
        return connect(
            url,
            ssl=ssl_context,
            server_hostname=self.server_hostname,
            subprotocols=[SUBPROTOCOL],
            compression=None,
            open_timeout=self.timeout,
            max_size=None,
            **kwargs,
        )
