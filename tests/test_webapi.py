import pytest
from fastapi.testclient import TestClient

from deck_service.settings import Settings
from deck_service.webapi import create_app

PPTX_MIME = "application/vnd.openxmlformats-officedocument.presentationml.presentation"


@pytest.fixture
def settings(tmp_path):
    return Settings.for_root(tmp_path / "data", artifact_ttl_sec=0, max_upload_mb=1)


@pytest.fixture
def make_client(settings, libreoffice):
    """Build a TestClient whose app drives the given fake converter behaviour."""
    clients = []

    def _make(behaviour: str = "success") -> TestClient:
        app = create_app(settings, converter=libreoffice(behaviour), configure_logging=False)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


def _upload(client, name="deck.pptx", content=b"PK\x03\x04fake-pptx", mime=PPTX_MIME):
    return client.post("/convert-presentation", files={"presentationFile": (name, content, mime)})


def test_health(make_client):
    client = make_client()
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_startup_creates_workspace(make_client, settings):
    make_client()
    for d in (settings.staging_dir, settings.output_dir, settings.log_dir):
        assert d.is_dir()


def test_convert_returns_servable_pdf_url(make_client, settings):
    client = make_client("success")

    resp = _upload(client)

    assert resp.status_code == 200
    body = resp.json()
    assert body["pdfUrl"].startswith("/converted_pdfs/")
    assert body["pdfUrl"].endswith("-deck.pdf")
    assert body["pdfUrl"] == f"/converted_pdfs/{body['jobId']}.pdf"

    pdf = client.get(body["pdfUrl"])
    assert pdf.status_code == 200
    assert pdf.content.startswith(b"%PDF")
    assert list(settings.staging_dir.iterdir()) == []


def test_octet_stream_upload_is_accepted_by_extension(make_client):
    client = make_client("success")
    resp = _upload(client, name="legacy.ppt", mime="application/octet-stream")
    assert resp.status_code == 200


def test_non_presentation_upload_is_rejected(make_client, settings):
    client = make_client("success")

    resp = _upload(client, name="notes.txt", content=b"hello", mime="text/plain")

    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["kind"] == "invalid_upload"
    assert "Only PowerPoint" in error["message"]
    assert list(settings.staging_dir.iterdir()) == []


def test_missing_file_part_is_rejected(make_client):
    client = make_client("success")
    resp = client.post("/convert-presentation", files={"somethingElse": ("a.pptx", b"x", PPTX_MIME)})
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "No presentation file was uploaded."


def test_oversized_upload_is_rejected(make_client, settings):
    client = make_client("success")

    resp = _upload(client, content=b"x" * (1024 * 1024 + 1))

    assert resp.status_code == 413
    assert resp.json()["error"]["kind"] == "payload_too_large"
    assert list(settings.staging_dir.iterdir()) == []


def test_converter_failure_returns_structured_error(make_client, settings):
    client = make_client("fail")

    resp = _upload(client)

    assert resp.status_code == 422
    error = resp.json()["error"]
    assert error["status"] == "failed"
    assert error["kind"] == "exited_with_error"
    assert "unsupported format" in error["message"]
    assert "unsupported format" in error["details"]
    assert str(settings.data_dir) not in resp.text
    assert list(settings.staging_dir.iterdir()) == []


def test_clean_exit_without_output_is_a_server_error(make_client):
    client = make_client("no_output")

    resp = _upload(client)

    assert resp.status_code == 500
    assert resp.json()["error"]["kind"] == "artifact_missing_after_clean_exit"


def test_unknown_artifact_is_not_found(make_client):
    client = make_client("success")
    assert client.get("/converted_pdfs/nope.pdf").status_code == 404
