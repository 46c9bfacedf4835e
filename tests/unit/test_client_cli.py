import json

import httpx

from bgflip.client.__main__ import main


def job(status, **fields):
    body = {"id": "job-1", "status": status, "sessionId": "s1"}
    body.update(fields)
    return body


def test_upload_and_wait_prints_each_status(tmp_path, capsys, image_factory):
    path = tmp_path / "cat.png"
    path.write_bytes(image_factory(8, 8))
    statuses = iter(["processing", "completed"])
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path == "/api/v1/images":
            seen["body"] = request.read()
            return httpx.Response(201, json=job("pending", originalUrl="http://test/o.png"))
        if request.method == "GET" and request.url.path == "/api/v1/images/job-1":
            return httpx.Response(200, json=job(next(statuses)))
        return httpx.Response(404, json={"error": "unexpected request"})

    code = main(
        ["--base-url", "http://test", "upload", str(path), "--session", "s1", "--wait", "--interval", "0.01"],
        transport=httpx.MockTransport(handler),
    )

    out = capsys.readouterr().out
    assert code == 0
    assert b'name="sessionId"' in seen["body"]
    assert b'filename="cat.png"' in seen["body"]
    assert "job-1: processing" in out
    assert "job-1: completed" in out


def test_upload_wait_ending_in_failure_exits_nonzero(tmp_path, capsys, image_factory):
    path = tmp_path / "cat.png"
    path.write_bytes(image_factory(8, 8))

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json=job("pending"))
        return httpx.Response(200, json=job("failed", error="Processing failed: boom"))

    code = main(
        ["upload", str(path), "--wait", "--interval", "0.01"],
        transport=httpx.MockTransport(handler),
    )

    assert code == 1
    assert "job-1: failed" in capsys.readouterr().out


def test_list_prints_session_json(capsys):
    listing = {"sessionId": "s1", "images": [], "total": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/images/session/s1"
        return httpx.Response(200, json=listing)

    code = main(["list", "s1"], transport=httpx.MockTransport(handler))

    assert code == 0
    assert json.loads(capsys.readouterr().out) == listing


def test_status_not_found_reports_server_error(capsys):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "Image not found: missing", "job_id": "missing"})

    code = main(["status", "missing"], transport=httpx.MockTransport(handler))

    assert code == 1
    assert "error: Image not found: missing" in capsys.readouterr().err


def test_unreachable_service_reports_error(capsys):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    code = main(["delete", "job-1"], transport=httpx.MockTransport(handler))

    assert code == 1
    assert "connection refused" in capsys.readouterr().err
