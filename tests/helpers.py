"""
Shared helpers for upload optimizer tests.
"""

import json as jsonlib
import re
import shlex
import threading
from pathlib import Path

import httpx

from upload_optimizer.models import TaskDefinition
from upload_optimizer.upstream import UpstreamClient

UPSTREAM_URL = "http://immich.test"


def parse_multipart(request: httpx.Request) -> list[dict]:
    """Split a multipart request body into its parts."""
    boundary = request.headers["content-type"].split("boundary=", 1)[1].encode()
    parts = []
    for chunk in request.content.split(b"--" + boundary)[1:-1]:
        head, _, body = chunk.lstrip(b"\r\n").partition(b"\r\n\r\n")
        name = re.search(rb'name="([^"]*)"', head)
        filename = re.search(rb'filename="([^"]*)"', head)
        parts.append(
            {
                "name": name.group(1).decode() if name else None,
                "filename": filename.group(1).decode() if filename else None,
                "body": body[:-2],
            }
        )
    return parts


def file_part(request: httpx.Request, field_name: str = "assetData") -> dict:
    return next(part for part in parse_multipart(request) if part["name"] == field_name)


def text_fields(request: httpx.Request) -> dict:
    return {part["name"]: part["body"].decode() for part in parse_multipart(request) if part["filename"] is None}


class FakeUpstream:
    """Records requests reaching the upstream server and answers them."""

    def __init__(self, status_code: int = 201, json: dict | None = None):
        self.status_code = status_code
        self.json = json if json is not None else {"id": "asset-1", "status": "created"}
        self.requests: list[httpx.Request] = []
        self._lock = threading.Lock()

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        if request.url.path == "/api/server/ping":
            return self._json_response(200, {"res": "pong"}, {"x-immich": "yes"})
        return self._json_response(self.status_code, self.json)

    @staticmethod
    def _json_response(status_code: int, payload, headers: dict | None = None) -> httpx.Response:
        # Built from a stream so the response is not read eagerly and can be
        # streamed by the proxy (``json=`` would consume it on construction).
        body = jsonlib.dumps(payload).encode()
        headers = {"content-type": "application/json", "content-length": str(len(body)), **(headers or {})}
        return httpx.Response(status_code, headers=headers, stream=httpx.ByteStream(body))

    def client(self) -> UpstreamClient:
        transport = httpx.MockTransport(self.handler)
        return UpstreamClient(UPSTREAM_URL, transport=transport, async_transport=transport)

    @property
    def uploads(self) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == "/api/assets"]


def write_bytes_command(size: int, extension: str) -> str:
    """Command that writes ``size`` zero bytes as the single output file."""
    return f"head -c {size} /dev/zero > {{dst_folder}}/{{name}}.{extension}"


def copy_command() -> str:
    return "cp {src_folder}/{name}.{extension} {dst_folder}/"


def task(name: str, extensions, command: str) -> TaskDefinition:
    return TaskDefinition(name=name, extensions=extensions, command=command)


def quoted(path: Path) -> str:
    return shlex.quote(str(path))
