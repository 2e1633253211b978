import json
from typing import Any, Generator

import requests

DEFAULT_SERVER_URL = "http://localhost:8000"


def _headers(api_key: str | None) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"} if api_key else {}


def _request(
    method: str,
    path: str,
    server_url: str,
    api_key: str | None,
    action: str,
) -> Any:
    try:
        response = requests.request(
            method,
            f"{server_url}{path}",
            headers=_headers(api_key),
            timeout=30,
        )
        response.raise_for_status()
        return response.json()
    except requests.exceptions.HTTPError as e:
        detail = ""
        try:
            detail = e.response.json().get("detail", "")
        except ValueError:
            pass
        message = f"Error {action}: {e}"
        if detail:
            message += f" ({detail})"
        raise RuntimeError(message) from e
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error {action}: {e}") from e


def list_runs(
    server_url: str = DEFAULT_SERVER_URL, api_key: str | None = None
) -> list[dict[str, Any]]:
    """
    List all runs recorded by the approval service.

    Returns:
        Run summaries with run_id, build_number, pipeline, status, branch,
        success, start_time and end_time

    Raises:
        RuntimeError: If the request fails due to network or server error
    """
    return _request("GET", "/runs", server_url, api_key, "listing runs")


def get_run(
    run_id: str, server_url: str = DEFAULT_SERVER_URL, api_key: str | None = None
) -> dict[str, Any]:
    """
    Get a run with its step results.

    Raises:
        RuntimeError: If the run does not exist or the request fails
    """
    return _request("GET", f"/runs/{run_id}", server_url, api_key, "fetching run")


def approve_run(
    run_id: str, server_url: str = DEFAULT_SERVER_URL, api_key: str | None = None
) -> dict[str, Any]:
    """
    Approve the manual step a run is waiting on.

    Returns:
        Dictionary with run_id, step, name and approved_by

    Raises:
        RuntimeError: If nothing awaits approval or the request fails
    """
    return _request("POST", f"/runs/{run_id}/approve", server_url, api_key, "approving run")


def stop_run(
    run_id: str, server_url: str = DEFAULT_SERVER_URL, api_key: str | None = None
) -> dict[str, Any]:
    """
    Ask the runner to stop a run.

    Raises:
        RuntimeError: If the run already finished or the request fails
    """
    return _request("POST", f"/runs/{run_id}/stop", server_url, api_key, "stopping run")


def stream_run(
    run_id: str,
    server_url: str = DEFAULT_SERVER_URL,
    api_key: str | None = None,
    from_beginning: bool = False,
) -> Generator[dict, None, None]:
    """
    Follow a run and yield its events via Server-Sent Events.

    Args:
        run_id: UUID of the run to follow
        server_url: Base URL of the approval service
        api_key: API key for authentication
        from_beginning: If True, replays all events from the start.
                       If False (default), only new events are streamed.

    Yields:
        dict: Event dictionaries with 'type' and other fields:
            - {"type": "log", "data": str, "step": int}
            - {"type": "step_started" | "step_completed", "data": str, "step": int}
            - {"type": "awaiting_approval" | "approved", "data": str, "step": int}
            - {"type": "complete", "success": bool}

    Raises:
        RuntimeError: On authentication failures, so the caller can explain
            how to provide a key
    """
    try:
        # Only add param if True (FastAPI will use default False if not present)
        params = {"from_beginning": "true"} if from_beginning else {}
        response = requests.get(
            f"{server_url}/runs/{run_id}/stream",
            params=params,
            headers=_headers(api_key),
            stream=True,
            timeout=300,
        )
        response.raise_for_status()

        # Parse SSE format: "data: {...}\n\n"
        for line in response.iter_lines(decode_unicode=True):
            if line and line.startswith("data: "):
                yield json.loads(line[6:])
    except requests.exceptions.HTTPError as e:
        if e.response is not None and e.response.status_code in (401, 403):
            raise RuntimeError(f"Error following run: {e}") from e
        yield {"type": "log", "data": f"Error following run: {e}\n"}
        yield {"type": "complete", "success": False}
    except requests.exceptions.RequestException as e:
        yield {"type": "log", "data": f"Error following run: {e}\n"}
        yield {"type": "complete", "success": False}


def check_service(url: str, path: str = "/health", timeout: float = 5) -> tuple[bool, str]:
    """
    Check that an HTTP service answers.

    Returns:
        (reachable, detail) where detail is the response body or the error
    """
    try:
        response = requests.get(f"{url.rstrip('/')}{path}", timeout=timeout)
        response.raise_for_status()
        return True, response.text.strip()
    except requests.exceptions.RequestException as e:
        return False, str(e)
