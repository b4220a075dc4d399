"""Tests for the FastAPI endpoints."""

from __future__ import annotations

from io import BytesIO

from fastapi.testclient import TestClient
from PIL import Image
import pytest

from cutout_service import api
from cutout_service.identity import Identity
from cutout_service.jobs import JobRegistry


@pytest.fixture
def wiring(provider, ledger, storage, metadata):
    registry = JobRegistry(8)
    overrides = {
        api.get_provider: lambda: provider,
        api.get_registry: lambda: registry,
        api.get_ledger: lambda: ledger,
        api.get_storage: lambda: storage,
        api.get_metadata_store: lambda: metadata,
        api.get_identity: lambda: None,
    }
    api.app.dependency_overrides.update(overrides)
    yield api.app.dependency_overrides
    api.app.dependency_overrides.clear()


@pytest.fixture
def client(wiring) -> TestClient:
    return TestClient(api.app)


def sign_in(wiring, user_id: str) -> None:
    wiring[api.get_identity] = lambda: Identity(user_id)


def upload(client: TestClient, png_bytes: bytes, name: str = "cat.png"):
    return client.post("/jobs", files={"file": (name, png_bytes, "image/png")})


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_anonymous_job_and_download(client, png_bytes) -> None:
    response = upload(client, png_bytes)

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "done"
    assert body["progress"] == 100
    assert body["debited"] is False
    assert (body["width"], body["height"]) == (8, 6)

    download = client.get(f"/jobs/{body['jobId']}/download")
    assert download.status_code == 200
    assert download.headers["content-type"] == "image/png"
    assert "removed-bg-" in download.headers["content-disposition"]
    image = Image.open(BytesIO(download.content))
    assert image.getpixel((0, 0))[3] == 0
    assert image.getpixel((1, 0))[3] == 255


def test_rejects_non_images(client) -> None:
    response = client.post("/jobs", files={"file": ("notes.txt", b"hello", "text/plain")})

    assert response.status_code == 400


def test_rejects_undecodable_images(client) -> None:
    response = client.post("/jobs", files={"file": ("x.png", b"garbage", "image/png")})

    assert response.status_code == 400


def test_unknown_job(client) -> None:
    assert client.get("/jobs/missing").status_code == 404


def test_insufficient_credits(client, wiring, provider, png_bytes) -> None:
    sign_in(wiring, "broke")

    response = upload(client, png_bytes)

    assert response.status_code == 402
    assert response.json()["detail"]["kind"] == "insufficient_credits"
    assert provider.load_calls == 0


def test_provider_failure_then_retry(client, wiring, provider, png_bytes) -> None:
    provider.fail_infer = True

    response = upload(client, png_bytes)
    assert response.status_code == 500
    job_id = response.json()["detail"]["jobId"]
    assert client.get(f"/jobs/{job_id}/download").status_code == 409

    provider.fail_infer = False
    retried = client.post(f"/jobs/{job_id}/process")
    assert retried.status_code == 200
    assert retried.json()["state"] == "done"


def test_signed_in_job_is_charged_and_saved(client, wiring, ledger, storage, metadata, png_bytes) -> None:
    sign_in(wiring, "user-1")

    body = upload(client, png_bytes, "portrait.jpg.png").json()
    assert body["debited"] is True
    assert ledger.balances["user-1"] == 0

    saved = client.post(f"/jobs/{body['jobId']}/save")
    assert saved.status_code == 200
    assert saved.json()["title"] == "portrait"
    assert len(storage.objects) == 2

    again = client.post(f"/jobs/{body['jobId']}/save")
    assert again.status_code == 409

    listed = client.get("/images").json()
    assert [img["id"] for img in listed] == [saved.json()["id"]]

    me = client.get("/me").json()
    assert me == {"userId": "user-1", "credits": 0, "imageCount": 1}


def test_save_failure_is_reported(client, wiring, storage, metadata, png_bytes) -> None:
    sign_in(wiring, "rich")
    storage.fail_upload.add("processed-images")
    job_id = upload(client, png_bytes).json()["jobId"]

    response = client.post(f"/jobs/{job_id}/save")

    assert response.status_code == 502
    assert response.json()["detail"]["kind"] == "persistence"
    assert metadata.records == []
    assert client.get(f"/jobs/{job_id}").json()["state"] == "done"


def test_save_requires_sign_in(client, png_bytes) -> None:
    job_id = upload(client, png_bytes).json()["jobId"]

    assert client.post(f"/jobs/{job_id}/save").status_code == 401


def test_cannot_save_someone_elses_job(client, wiring, png_bytes) -> None:
    sign_in(wiring, "rich")
    job_id = upload(client, png_bytes).json()["jobId"]

    sign_in(wiring, "user-1")
    assert client.post(f"/jobs/{job_id}/save").status_code == 403


def test_delete_image(client, wiring, storage, metadata, png_bytes) -> None:
    sign_in(wiring, "rich")
    job_id = upload(client, png_bytes).json()["jobId"]
    image_id = client.post(f"/jobs/{job_id}/save").json()["id"]

    assert client.delete(f"/images/{image_id}").status_code == 204
    assert storage.objects == {}
    assert client.get("/images").json() == []
    assert client.delete(f"/images/{image_id}").status_code == 404


def test_partial_delete_is_reported(client, wiring, storage, metadata, png_bytes) -> None:
    sign_in(wiring, "rich")
    job_id = upload(client, png_bytes).json()["jobId"]
    image_id = client.post(f"/jobs/{job_id}/save").json()["id"]
    metadata.fail_delete = True

    response = client.delete(f"/images/{image_id}")

    assert response.status_code == 502
    assert len(response.json()["detail"]["removed"]) == 2
    assert [img["id"] for img in client.get("/images").json()] == [image_id]


def test_gallery_requires_sign_in(client) -> None:
    assert client.get("/images").status_code == 401
    assert client.get("/me").status_code == 401


def test_gallery_unavailable_without_storage(client, wiring) -> None:
    sign_in(wiring, "rich")
    wiring[api.get_storage] = lambda: None

    assert client.get("/images").status_code == 503


def test_invalid_authorization_header(wiring) -> None:
    del wiring[api.get_identity]
    wiring[api.get_rest_client] = lambda: None
    client = TestClient(api.app)

    response = client.get("/images", headers={"Authorization": "Basic abc"})

    assert response.status_code == 401


def test_jobs_are_private_to_their_owner(client, wiring, png_bytes) -> None:
    sign_in(wiring, "rich")
    job_id = upload(client, png_bytes).json()["jobId"]
    assert client.get(f"/jobs/{job_id}/download").status_code == 200

    sign_in(wiring, "user-1")
    assert client.get(f"/jobs/{job_id}").status_code == 403
    assert client.get(f"/jobs/{job_id}/download").status_code == 403

    wiring[api.get_identity] = lambda: None
    assert client.get(f"/jobs/{job_id}").status_code == 403
    assert client.get(f"/jobs/{job_id}/download").status_code == 403


def test_rejects_oversized_images(client, monkeypatch, png_bytes) -> None:
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 10)

    response = upload(client, png_bytes)

    assert response.status_code == 400
