from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request


def request_json(
    *, url: str, token: str | None = None, payload: dict | None = None
) -> tuple[int, dict | list | None, str]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method="POST" if data else "GET")
    request.add_header("Accept", "application/json")
    if data:
        request.add_header("Content-Type", "application/json")
    if token:
        request.add_header("Authorization", f"Bearer {token}")
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            body = response.read().decode("utf-8")
            parsed = json.loads(body) if body.startswith("{") or body.startswith("[") else None
            return response.status, parsed, body
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8")
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            parsed = None
        return exc.code, parsed, body


def request_text(*, url: str) -> tuple[int, str]:
    try:
        with urllib.request.urlopen(url, timeout=20) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def assert_true(condition: bool, message: str) -> None:
    if not condition:
        raise RuntimeError(message)


def main() -> int:
    parser = argparse.ArgumentParser(description="Smoke test for Pipeline CRM API.")
    parser.add_argument("--base-url", required=True)
    parser.add_argument("--token", default="", help="Recruiter token when auth is enabled.")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    token = args.token.strip() or None

    status, data, _ = request_json(url=f"{base_url}/health/ready")
    assert_true(status == 200, f"/health/ready expected 200, got {status}")
    assert_true(isinstance(data, dict) and data.get("status") == "ready", "/health/ready invalid")
    print("OK /health/ready")

    status, data, _ = request_json(url=f"{base_url}/workflow/stages")
    assert_true(status == 200, f"/workflow/stages expected 200, got {status}")
    assert_true(
        isinstance(data, dict) and data.get("active_flow_stages", [None])[0] == "SOURCING",
        "/workflow/stages invalid payload",
    )
    print("OK /workflow/stages")

    status, created, body = request_json(
        url=f"{base_url}/candidates", token=token, payload={"name": "Smoke Test"}
    )
    assert_true(status == 201, f"POST /candidates expected 201, got {status}: {body}")
    candidate_id = created["id"]
    print(f"OK POST /candidates id={candidate_id}")

    status, data, body = request_json(
        url=f"{base_url}/candidates/{candidate_id}/transition",
        token=token,
        payload={"to_stage": "ELIMINATED"},
    )
    assert_true(status == 400, f"transition without close_reason expected 400, got {status}")
    assert_true(data["detail"]["field"] == "close_reason", f"unexpected rejection: {body}")
    print("OK guarded transition rejected")

    status, data, body = request_json(
        url=f"{base_url}/candidates/{candidate_id}/transition",
        token=token,
        payload={"to_stage": "TRAINING"},
    )
    assert_true(status == 200, f"transition expected 200, got {status}: {body}")
    print("OK transition SOURCING -> TRAINING")

    status, body = request_text(url=f"{base_url}/metrics")
    assert_true(status == 200, f"/metrics expected 200, got {status}")
    assert_true("pipeline_crm_stage_transitions_total" in body, "/metrics missing transitions")
    print("OK /metrics")

    print("Smoke test passed.")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:
        print(f"Smoke test failed: {exc}", file=sys.stderr)
        sys.exit(1)
