"""
Shutdown Executor

Runs one shutdown recipe against one container:

- Command: exec the recipe's argv inside the container. stdout is dropped,
  stderr is kept for debugging. The command is expected to stop the
  process on its own (e.g. by signalling PID 1); nothing waits for the
  container to actually exit.
- HttpTrigger: port-forward to the recipe's port and send a single HTTP/1.1
  request over the tunnel. Only a 200 counts as success.

Every failure is raised as a ShutdownError naming the pod and container.
Recipes are safe to send twice to a container that is already stopping.
"""

import asyncio
import functools
import logging
import socket
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Set

import httpcore

from ...actions import Command, HttpTrigger, ShutdownRecipe
from .client import KubernetesClient

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"

# Upper bound for sending the request and receiving the response
REQUEST_TIMEOUT_SECONDS = 1.0

# How often, and for how long, a tunnel is checked for closure after use
TUNNEL_POLL_INTERVAL_SECONDS = 0.5
TUNNEL_WATCH_LIMIT_SECONDS = 60.0


class ShutdownError(Exception):
    """A sidecar could not be shut down."""

    def __init__(self, pod_name: str, container_name: str, message: str):
        super().__init__(message)
        self.pod_name = pod_name
        self.container_name = container_name


class ExecFailed(ShutdownError):
    def __init__(self, pod_name: str, container_name: str, detail: str):
        super().__init__(pod_name, container_name, f"{pod_name}: exec failed in {container_name}: {detail}")
        self.detail = detail


class PortUnavailable(ShutdownError):
    def __init__(self, pod_name: str, container_name: str, port: int, detail: str = ""):
        message = f"{pod_name}: unable to attach to port {port} for {container_name}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(pod_name, container_name, message)
        self.port = port


class HttpTriggerError(ShutdownError):
    """Base for failures of the HTTP request itself."""

    def __init__(self, pod_name: str, container_name: str, recipe: HttpTrigger, reason: str):
        super().__init__(
            pod_name,
            container_name,
            f"{pod_name}: HTTP request ({recipe.method} {recipe.path} at port {recipe.port}) failed: {reason}"
        )
        self.recipe = recipe


class RequestTimeout(HttpTriggerError):
    def __init__(self, pod_name: str, container_name: str, recipe: HttpTrigger):
        super().__init__(pod_name, container_name, recipe, "request timeout")


class UnexpectedStatus(HttpTriggerError):
    def __init__(self, pod_name: str, container_name: str, recipe: HttpTrigger, code: int, body: str):
        super().__init__(pod_name, container_name, recipe, f"code {code}: {body}")
        self.code = code
        self.body = body


class UndecodableBody(HttpTriggerError):
    def __init__(self, pod_name: str, container_name: str, recipe: HttpTrigger, code: int):
        super().__init__(pod_name, container_name, recipe, f"code {code}: response body is not valid UTF-8")
        self.code = code


class HttpRequestFailed(HttpTriggerError):
    pass


class TunnelStream(httpcore.NetworkStream):
    """httpcore network stream over the local end of a port-forward socket."""

    def __init__(self, sock: socket.socket):
        self._sock = sock

    def read(self, max_bytes: int, timeout: Optional[float] = None) -> bytes:
        self._sock.settimeout(timeout)
        try:
            return self._sock.recv(max_bytes)
        except socket.timeout as e:
            raise httpcore.ReadTimeout(str(e)) from e
        except OSError as e:
            raise httpcore.ReadError(str(e)) from e

    def write(self, buffer: bytes, timeout: Optional[float] = None) -> None:
        if not buffer:
            return
        self._sock.settimeout(timeout)
        try:
            self._sock.sendall(buffer)
        except socket.timeout as e:
            raise httpcore.WriteTimeout(str(e)) from e
        except OSError as e:
            raise httpcore.WriteError(str(e)) from e

    def close(self) -> None:
        self._sock.close()


# Keeps tunnel watchers referenced until they finish
_tunnel_watchers: Set[asyncio.Task] = set()


async def _watch_tunnel(tunnel, port: int, pod_name: str) -> None:
    """Wait for a port-forward to close and log the error it closed with, if any."""
    try:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + TUNNEL_WATCH_LIMIT_SECONDS
        while tunnel.connected and loop.time() < deadline:
            await asyncio.sleep(TUNNEL_POLL_INTERVAL_SECONDS)

        if tunnel.connected:
            logger.debug(f"{pod_name}: portforward to port {port} still open, no longer watching it")
            return

        error = tunnel.error(port)
        if error:
            logger.error(f"{pod_name}: error in portforward connection: {error}")
    except Exception as e:
        logger.error(f"{pod_name}: error in portforward connection: {e}")


def _start_tunnel_watcher(tunnel, port: int, pod_name: str) -> asyncio.Task:
    task = asyncio.create_task(_watch_tunnel(tunnel, port, pod_name))
    _tunnel_watchers.add(task)
    task.add_done_callback(_tunnel_watchers.discard)
    return task


class ShutdownExecutor:
    """Executes shutdown recipes against running containers."""

    def __init__(self, k8s: KubernetesClient, exec_timeout: int = 30, http_workers: int = 8):
        self.k8s = k8s
        self.exec_timeout = exec_timeout

        # HTTP triggers never share the loop default executor with exec calls
        # and event posts; the request timeout covers only the exchange
        self._http_pool = ThreadPoolExecutor(max_workers=http_workers, thread_name_prefix="http-trigger")

    def close(self) -> None:
        """Release the HTTP trigger threads; requests already running finish on their own."""
        self._http_pool.shutdown(wait=False)

    async def execute(
        self,
        recipe: ShutdownRecipe,
        pod_name: str,
        namespace: str,
        container_name: str
    ) -> None:
        """
        Shut down a container in a given pod with a given recipe.

        Raises:
            ShutdownError: If the recipe could not be delivered
        """
        try:
            if isinstance(recipe, Command):
                await self._run_command(recipe, pod_name, namespace, container_name)
            elif isinstance(recipe, HttpTrigger):
                await self._send_http_trigger(recipe, pod_name, namespace, container_name)
            else:
                raise TypeError(f"unknown shutdown recipe: {recipe!r}")
        except ShutdownError:
            raise
        except Exception as e:
            logger.error(f"{pod_name}: unexpected error shutting down {container_name}: {e}", exc_info=True)
            raise ShutdownError(pod_name, container_name, f"{pod_name}: {e}") from e

    async def _run_command(
        self,
        recipe: Command,
        pod_name: str,
        namespace: str,
        container_name: str
    ) -> None:
        command = list(recipe.argv)
        logger.debug(f"{pod_name}: running command: {command}")

        try:
            stderr = await asyncio.to_thread(
                self.k8s.exec_in_container,
                pod_name,
                namespace,
                container_name,
                command,
                timeout=self.exec_timeout
            )
        except Exception as e:
            raise ExecFailed(pod_name, container_name, str(e)) from e

        if stderr:
            logger.debug(f"{pod_name}: stderr from {container_name}: {stderr}")
        logger.info(f"{pod_name}: sent `{' '.join(command)}` to {container_name}")

    async def _send_http_trigger(
        self,
        recipe: HttpTrigger,
        pod_name: str,
        namespace: str,
        container_name: str
    ) -> None:
        loop = asyncio.get_running_loop()
        try:
            tunnel = await loop.run_in_executor(
                self._http_pool,
                self.k8s.open_portforward,
                pod_name,
                namespace,
                recipe.port
            )
            sock = tunnel.socket(recipe.port)
        except Exception as e:
            raise PortUnavailable(pod_name, container_name, recipe.port, str(e)) from e

        _start_tunnel_watcher(tunnel, recipe.port, pod_name)

        connection = httpcore.HTTP11Connection(
            origin=httpcore.Origin(b"http", LOOPBACK_HOST.encode(), recipe.port),
            stream=TunnelStream(sock),
        )
        url = f"http://{LOOPBACK_HOST}:{recipe.port}{recipe.path}"
        timeouts = {
            "connect": REQUEST_TIMEOUT_SECONDS,
            "read": REQUEST_TIMEOUT_SECONDS,
            "write": REQUEST_TIMEOUT_SECONDS,
            "pool": REQUEST_TIMEOUT_SECONDS,
        }

        logger.debug(f"{pod_name}: sending HTTP request ({recipe.method} {recipe.path} at {recipe.port})")

        try:
            response = await asyncio.wait_for(
                loop.run_in_executor(
                    self._http_pool,
                    functools.partial(
                        connection.request,
                        recipe.method,
                        url,
                        headers=[("Connection", "close"), ("Host", LOOPBACK_HOST)],
                        content=b"",
                        extensions={"timeout": timeouts},
                    )
                ),
                timeout=REQUEST_TIMEOUT_SECONDS
            )
        except (asyncio.TimeoutError, httpcore.TimeoutException) as e:
            raise RequestTimeout(pod_name, container_name, recipe) from e
        except Exception as e:
            raise HttpRequestFailed(pod_name, container_name, recipe, str(e) or type(e).__name__) from e
        finally:
            connection.close()

        logger.debug(f"{pod_name}: got status code {response.status}")
        if response.status != 200:
            try:
                body = response.content.decode("utf-8")
            except UnicodeDecodeError as e:
                raise UndecodableBody(pod_name, container_name, recipe, response.status) from e
            raise UnexpectedStatus(pod_name, container_name, recipe, response.status, body)

        logger.info(
            f"{pod_name}: sent HTTP request `{recipe.method} {recipe.path}` "
            f"at port {recipe.port} to {container_name}"
        )
