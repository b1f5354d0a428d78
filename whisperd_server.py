#!/usr/bin/env python3
"""Whisper metrics agent: serves the local Whisper tree over HTTP.

API:
- GET|POST /metrics?regex=<re>&list=<json array>&force=1
- HEAD     /metrics/<name>
- GET      /metrics/<name>
- DELETE   /metrics/<name>
- PUT      /metrics/<name>   (replace with the uploaded Whisper file)
- POST     /metrics/<name>   (backfill from the uploaded Whisper file)

Listing is answered from an in-memory cache. While the cache is being
rebuilt the server answers 202 and the client is expected to retry.
``force`` starts a rebuild when none is running.

Metric names use dots (``carbon.agents.host.cpu``) and map to files like
``<prefix>/carbon/agents/host/cpu.wsp``. HEAD and GET add the header
``X-Metric-Stat`` with a JSON object:
  {"Name": <metric>, "Size": <bytes>, "Mode": <permission bits>, "ModTime": <unix seconds>}

PUT and POST bodies must be sent as application/octet-stream and be
larger than the 28 byte Whisper header.

Errors are returned as:
  {"error": {"code": "...", "message": "..."}}
"""

import argparse
import json
import logging
import logging.config
import os
import shutil
import tempfile
import tomllib
from dataclasses import dataclass
from email.utils import formatdate
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, unquote, urlparse

from whisper_fill import fill_archives
from whisperd_cache import MetricsCache, decode_metric_list, filter_list, filter_regex
from whisperd_store import (
    OCTET_STREAM,
    MergeFunc,
    MetricPaths,
    MetricStat,
    PathLocks,
    delete_metric,
    heal_metric,
    stat_metric,
    validate_heal_request,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.whisperd.toml"
DEFAULT_PREFIX = "/opt/graphite/storage/whisper"
DEFAULT_PORT = 4242
FORM_URLENCODED = "application/x-www-form-urlencoded"
METRIC_STAT_HEADER = "X-Metric-Stat"


def build_error(status: int, code: str, message: str) -> Tuple[int, Dict[str, Any]]:
    return status, {"error": {"code": code, "message": message}}


class WhisperdRequestHandler(BaseHTTPRequestHandler):
    server_version = "whisperd/1.0"

    def _send_json(self, status: int, payload: Any) -> None:
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _send_error_json(self, status: int, code: str, message: str) -> None:
        status, payload = build_error(status, code, message)
        self._send_json(status, payload)

    def _query_param(self, params: Dict[str, List[str]], name: str) -> Optional[str]:
        values = params.get(name)
        if not values:
            return None
        return values[0]

    def _route(self) -> None:
        parsed = urlparse(self.path)
        path = parsed.path
        try:
            if path == "/metrics":
                self._handle_list(parsed.query)
                return
            if path.startswith("/metrics/"):
                self._handle_metric(unquote(path[len("/metrics/"):]))
                return
            self._send_error_json(404, "not_found", f"Unknown endpoint: {path}")
        except ValueError as exc:
            self._send_error_json(400, "bad_request", str(exc))
        except FileNotFoundError:
            self._send_error_json(404, "not_found", "Metric not found.")
        except OSError as exc:
            logger.error("I/O error handling %s %s: %s", self.command, path, exc)
            self._send_error_json(500, "io_error", "I/O error while handling the request.")
        except Exception:  # safety net
            logger.exception("Unexpected error handling %s %s", self.command, path)
            self._send_error_json(500, "internal_error", "Internal server error.")

    do_GET = _route
    do_HEAD = _route
    do_POST = _route
    do_PUT = _route
    do_DELETE = _route
    do_PATCH = _route
    do_OPTIONS = _route

    def __getattr__(self, name: str) -> Any:
        # Any other verb gets the JSON error envelope instead of the stock 501 page.
        if name.startswith("do_"):
            return self._route
        raise AttributeError(name)

    def _read_form_params(self) -> Dict[str, List[str]]:
        content_type = self.headers.get("Content-Type", "").split(";", 1)[0].strip().lower()
        if content_type != FORM_URLENCODED:
            return {}
        length_raw = self.headers.get("Content-Length", "").strip()
        if not length_raw:
            return {}
        if not (length_raw.isascii() and length_raw.isdigit()):
            raise ValueError("Invalid Content-Length")
        length = int(length_raw)
        body = self.rfile.read(length)
        try:
            return parse_qs(body.decode("utf-8"), keep_blank_values=False)
        except UnicodeDecodeError:
            raise ValueError("GET/POST parameter parsing error.")

    def _handle_list(self, query: str) -> None:
        if self.command not in ("GET", "POST"):
            raise ValueError("Bad request method.")
        params = parse_qs(query, keep_blank_values=False)
        if self.command == "POST":
            for name, values in self._read_form_params().items():
                params.setdefault(name, []).extend(values)

        cache: MetricsCache = self.server.cache  # type: ignore[attr-defined]
        force = self._query_param(params, "force")
        if (force or not cache.has_snapshot()) and cache.is_available():
            cache.trigger_rebuild()

        snapshot, ready = cache.get_snapshot()
        if not ready or snapshot is None:
            self._send_json(HTTPStatus.ACCEPTED, {"status": "building", "message": "Cache update in progress."})
            return

        metrics: Sequence[str] = snapshot
        regex = self._query_param(params, "regex")
        if regex:
            metrics = filter_regex(regex, metrics)
        raw_list = self._query_param(params, "list")
        if raw_list:
            metrics = filter_list(decode_metric_list(raw_list), metrics)

        self._send_json(200, list(metrics))

    def _handle_metric(self, metric: str) -> None:
        if self.command not in ("HEAD", "GET", "DELETE", "PUT", "POST"):
            raise ValueError("Bad method request.")
        paths: MetricPaths = self.server.paths  # type: ignore[attr-defined]
        path = paths.metric_to_path(metric)

        if self.command == "HEAD":
            self._handle_head(metric, path)
        elif self.command == "GET":
            self._handle_get(metric, path)
        elif self.command == "DELETE":
            with self.server.path_locks.hold(path):  # type: ignore[attr-defined]
                delete_metric(path, fatal_if_missing=True)
            self._send_json(200, {"ok": True, "metric": metric})
        elif self.command == "PUT":
            validate_heal_request(self.headers.get("Content-Type"), self.headers.get("Content-Length"))
            with self.server.path_locks.hold(path):  # type: ignore[attr-defined]
                delete_metric(path, fatal_if_missing=False)
                self._heal(metric, path)
        else:
            with self.server.path_locks.hold(path):  # type: ignore[attr-defined]
                self._heal(metric, path)

    def _handle_head(self, metric: str, path: str) -> None:
        try:
            stat = stat_metric(metric, path)
        except FileNotFoundError:
            self.send_response(404)
            self.send_header("Content-Length", "0")
            self.end_headers()
            return
        self.send_response(200)
        self.send_header(METRIC_STAT_HEADER, stat.to_json())
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _handle_get(self, metric: str, path: str) -> None:
        with open(path, "rb") as f:
            stat = MetricStat.from_stat_result(metric, os.fstat(f.fileno()))
            self.send_response(200)
            self.send_header("Content-Type", OCTET_STREAM)
            self.send_header("Content-Length", str(stat.Size))
            self.send_header("Last-Modified", formatdate(stat.ModTime, usegmt=True))
            self.send_header(METRIC_STAT_HEADER, stat.to_json())
            self.end_headers()
            try:
                shutil.copyfileobj(f, self.wfile)
            except ConnectionError as exc:
                logger.warning("Client went away while sending %s: %s", path, exc)

    def _heal(self, metric: str, path: str) -> None:
        result = heal_metric(
            self.rfile,
            self.headers.get("Content-Type"),
            self.headers.get("Content-Length"),
            path,
            self.server.staging_dir,  # type: ignore[attr-defined]
            self.server.merge,  # type: ignore[attr-defined]
        )
        self._send_json(200, {"ok": True, "metric": metric, "merged": result.merged, "size": result.size})

    def log_message(self, fmt: str, *args: Any) -> None:
        logger.info("%s - %s", self.address_string(), fmt % args)


class WhisperdHttpServer(ThreadingHTTPServer):
    def __init__(
        self,
        server_address: Tuple[str, int],
        paths: MetricPaths,
        staging_dir: str,
        cache: Optional[MetricsCache] = None,
        merge: MergeFunc = fill_archives,
    ):
        super().__init__(server_address, WhisperdRequestHandler)
        self.paths = paths
        self.staging_dir = staging_dir
        self.cache = cache if cache is not None else MetricsCache(paths)
        self.merge = merge
        self.path_locks = PathLocks()


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    prefix: str = DEFAULT_PREFIX
    tmp_dir: str = tempfile.gettempdir()
    log_level: str = "INFO"
    log_file: Optional[str] = None
    warm_cache: bool = True


def load_config_file(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    with open(path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            raise ValueError(f"Invalid config file {path}: {exc}") from exc
    # Settings may live at the top level or below [whisperd].
    section = data.get("whisperd")
    if isinstance(section, dict):
        merged = {k: v for k, v in data.items() if k != "whisperd"}
        merged.update(section)
        return merged
    return data


def resolve_config(args: argparse.Namespace, file_values: Dict[str, Any]) -> ServerConfig:
    config = ServerConfig()
    for key in ("host", "port", "prefix", "tmp_dir", "log_level", "log_file", "warm_cache"):
        cli_value = getattr(args, key, None)
        if cli_value is not None:
            setattr(config, key, cli_value)
        elif key in file_values:
            setattr(config, key, file_values[key])

    try:
        config.port = int(config.port)
    except (TypeError, ValueError):
        raise ValueError(f"port must be an integer, got {config.port!r}")
    if not isinstance(config.warm_cache, bool):
        raise ValueError(f"warm_cache must be true or false, got {config.warm_cache!r}")
    config.prefix = os.path.abspath(os.path.expanduser(str(config.prefix)))
    config.tmp_dir = os.path.abspath(os.path.expanduser(str(config.tmp_dir)))
    config.log_level = str(config.log_level).upper()
    if config.log_file:
        config.log_file = os.path.abspath(os.path.expanduser(str(config.log_file)))
    return config


def setup_logging(level: str, log_file: Optional[str] = None) -> None:
    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "simple",
            "stream": "ext://sys.stderr",
        },
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "formatter": "detailed",
            "filename": log_file,
            "mode": "a",
        }
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "simple": {"format": "%(asctime)s %(levelname)s %(message)s"},
                "detailed": {"format": "%(asctime)s %(name)s %(levelname)s [%(threadName)s] %(message)s"},
            },
            "handlers": handlers,
            "root": {"level": level, "handlers": list(handlers)},
        }
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Whisper metrics agent")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to TOML config file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--host", default=None, help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help=f"Bind port (default: {DEFAULT_PORT})")
    parser.add_argument(
        "--prefix",
        default=None,
        help=f"Root of the Whisper tree (default: {DEFAULT_PREFIX})",
    )
    parser.add_argument(
        "--tmp-dir",
        dest="tmp_dir",
        default=None,
        help="Staging directory for uploaded Whisper files (default: system temp dir)",
    )
    parser.add_argument("--log-level", dest="log_level", default=None, help="Logging level (default: INFO)")
    parser.add_argument("--log-file", dest="log_file", default=None, help="Also log to this file")
    parser.add_argument(
        "--no-warm-cache",
        dest="warm_cache",
        action="store_const",
        const=False,
        default=None,
        help="Do not build the metrics cache at startup",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = resolve_config(args, load_config_file(os.path.expanduser(args.config)))
    except (OSError, ValueError) as exc:
        raise SystemExit(str(exc))

    if not os.path.isdir(config.prefix):
        raise SystemExit(f"Whisper prefix not found: {config.prefix}")
    if not os.path.isdir(config.tmp_dir):
        raise SystemExit(f"Staging directory not found: {config.tmp_dir}")
    if not (1 <= config.port <= 65535):
        raise SystemExit("--port must be in range 1..65535")

    setup_logging(config.log_level, config.log_file)
    paths = MetricPaths(config.prefix)
    cache = MetricsCache(paths)
    if config.warm_cache:
        cache.trigger_rebuild()

    httpd = WhisperdHttpServer((config.host, config.port), paths, config.tmp_dir, cache=cache)
    logger.info(
        "Serving Whisper metrics on http://%s:%d (prefix=%s, tmp_dir=%s)",
        config.host,
        config.port,
        config.prefix,
        config.tmp_dir,
    )
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        httpd.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
