"""Run commands inside a pod through the Kubernetes exec API."""

from dataclasses import dataclass
from typing import Any, Callable, Iterable

from kubernetes import client
from kubernetes.stream import stream

from .errors import ExecError


@dataclass
class ExecResult:
    stdout: str
    stderr: str
    returncode: int


def exec_in_pod(
    core_api: client.CoreV1Api,
    namespace: str,
    pod_name: str,
    command: list[str],
    container: str | None = None,
    stdin: Iterable[str] | None = None,
    stdout_sink: Callable[[str], None] | None = None,
    check: bool = True
) -> ExecResult:
    """Execute a command in a pod and collect its output.

    Args:
        core_api: CoreV1Api bound to the pod's cluster
        namespace: Namespace of the pod
        pod_name: Pod name
        command: Command to execute as list (e.g., ["sh", "-c", "du -s /backups"])
        container: Optional container name
        stdin: Optional iterable of text chunks written to the command's stdin
        stdout_sink: Optional callback receiving stdout chunks as they arrive;
            when set, stdout is not accumulated in the result
        check: Raise ExecError on non-zero exit code

    Returns:
        ExecResult with stdout, stderr and exit code

    Raises:
        ExecError: If the exec call fails or (with check) exits non-zero
    """
    exec_kwargs: dict[str, Any] = {
        'name': pod_name,
        'namespace': namespace,
        'command': command,
        'stderr': True,
        'stdout': True,
        'stdin': stdin is not None,
        'tty': False,
        '_preload_content': False
    }
    if container:
        exec_kwargs['container'] = container

    try:
        resp = stream(core_api.connect_get_namespaced_pod_exec, **exec_kwargs)
    except Exception as e:
        raise ExecError(
            f"Failed to execute command in pod '{pod_name}' in namespace '{namespace}': {e}"
        ) from e

    stdout_parts: list[str] = []
    stderr_parts: list[str] = []

    def drain() -> None:
        if resp.peek_stdout():
            chunk = resp.read_stdout()
            if stdout_sink:
                stdout_sink(chunk)
            else:
                stdout_parts.append(chunk)
        if resp.peek_stderr():
            stderr_parts.append(resp.read_stderr())

    try:
        if stdin is not None:
            for chunk in stdin:
                resp.write_stdin(chunk)
                resp.update(timeout=0)
                drain()

        while resp.is_open():
            resp.update(timeout=1)
            drain()
    finally:
        resp.close()

    exit_code = resp.returncode
    stdout_output = ''.join(stdout_parts)
    stderr_output = ''.join(stderr_parts)

    if check and exit_code != 0:
        raise ExecError(
            f"Command failed with exit code {exit_code}\n"
            f"Pod: {pod_name}, Namespace: {namespace}\n"
            f"Command: {' '.join(command)}\n"
            f"Stderr: {stderr_output.strip()}",
            returncode=exit_code,
            stdout=stdout_output,
            stderr=stderr_output
        )

    return ExecResult(stdout=stdout_output, stderr=stderr_output, returncode=exit_code)
