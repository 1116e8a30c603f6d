import pytest

from zemi import config
from zemi.database import update_document

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture
def admin(client, make_user):
    user = make_user("admin@example.com", full_name="Admin ZeMi")
    client.portal.call(update_document, "profile", {"user_id": user["id"]}, {"is_admin": True})
    return user


def _submit(client, user, document_type="id_card", selfie=True, content_type="image/png", data=PNG):
    files = {"document": ("cni.png", data, content_type)}
    if selfie:
        files["selfie"] = ("selfie.jpg", PNG, "image/jpeg")
    return client.post(
        "/verifications", data={"document_type": document_type}, files=files, headers=user["headers"]
    )


def test_submit_with_selfie(client, passenger, storage_dir):
    r = _submit(client, passenger)
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["status"] == "pending"
    assert body["document_type"] == "id_card"
    assert "/storage/identity-documents/" + passenger["id"] + "/" in body["document_url"]
    assert body["selfie_url"].endswith("-selfie.jpg")

    stored = list((storage_dir / "identity-documents" / passenger["id"]).iterdir())
    assert len(stored) == 2

    mine = client.get("/verifications/me", headers=passenger["headers"]).json()
    assert mine["id"] == body["id"]


def test_submit_without_selfie(client, passenger):
    r = _submit(client, passenger, document_type="passport", selfie=False)
    assert r.status_code == 201
    assert r.json()["selfie_url"] is None


def test_submit_rejects_bad_files(client, passenger, storage_dir, monkeypatch):
    r = _submit(client, passenger, content_type="application/pdf")
    assert r.status_code == 415
    assert r.json()["detail"] == "Veuillez sélectionner une image"

    monkeypatch.setattr(config, "MAX_UPLOAD_BYTES", 32)
    r = _submit(client, passenger)
    assert r.status_code == 413

    r = _submit(client, passenger, document_type="birth_certificate")
    assert r.status_code == 422

    # nothing was stored for the failed attempts
    assert not (storage_dir / "identity-documents").exists()
    assert client.get("/verifications/me", headers=passenger["headers"]).json() is None


def test_one_open_request_at_a_time(client, passenger):
    assert _submit(client, passenger).status_code == 201
    assert _submit(client, passenger).status_code == 409


def test_admin_only(client, passenger):
    r = client.get("/verifications", headers=passenger["headers"])
    assert r.status_code == 403
    assert r.json()["detail"] == "Accès refusé - Administrateurs uniquement"


def test_only_admin_decides(client, passenger, make_user, admin):
    verification = _submit(client, passenger).json()
    other = make_user("curieux@example.com", full_name="Curieux")
    for user in (passenger, other):
        r = client.post(f"/verifications/{verification['id']}/approve", headers=user["headers"])
        assert r.status_code == 403
        r = client.post(
            f"/verifications/{verification['id']}/reject", json={"reason": "Faux"}, headers=user["headers"]
        )
        assert r.status_code == 403

    assert client.get("/verifications/me", headers=passenger["headers"]).json()["status"] == "pending"
    assert client.get(f"/profiles/{passenger['id']}").json()["verified"] is False
    assert client.get("/verifications", headers=admin["headers"]).json()["pending_count"] == 1


def test_admin_approves(client, passenger, admin):
    verification = _submit(client, passenger).json()

    listing = client.get("/verifications", headers=admin["headers"]).json()
    assert listing["pending_count"] == 1
    assert listing["verifications"][0]["profile"]["full_name"] == "Ama Diop"

    r = client.post(f"/verifications/{verification['id']}/approve", headers=admin["headers"])
    assert r.status_code == 200
    assert r.json()["status"] == "approved"
    assert r.json()["verified_at"] is not None
    assert client.get(f"/profiles/{passenger['id']}").json()["verified"] is True

    # already processed
    r = client.post(f"/verifications/{verification['id']}/reject", json={"reason": "flou"}, headers=admin["headers"])
    assert r.status_code == 409
    assert client.get("/verifications", headers=admin["headers"]).json()["pending_count"] == 0


def test_admin_rejects_with_reason(client, passenger, admin):
    verification = _submit(client, passenger).json()
    url = f"/verifications/{verification['id']}/reject"

    r = client.post(url, json={"reason": "   "}, headers=admin["headers"])
    assert r.status_code == 400
    assert r.json()["detail"] == "Veuillez indiquer la raison du rejet"

    r = client.post(url, json={"reason": "Document illisible"}, headers=admin["headers"])
    assert r.status_code == 200
    assert r.json()["status"] == "rejected"
    assert r.json()["rejection_reason"] == "Document illisible"
    assert client.get(f"/profiles/{passenger['id']}").json()["verified"] is False

    # a rejected user may try again
    assert _submit(client, passenger).status_code == 201
    assert client.get("/verifications/me", headers=passenger["headers"]).json()["status"] == "pending"


def test_unknown_verification(client, admin):
    r = client.post("/verifications/64b7f0c2a1b2c3d4e5f60718/approve", headers=admin["headers"])
    assert r.status_code == 404
