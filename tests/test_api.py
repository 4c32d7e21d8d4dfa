from urllib.parse import quote

import pytest

from chunked_upload.identity import derive_session_key


def files_in(directory):
    return sorted(p.name for p in directory.iterdir()) if directory.exists() else []


@pytest.fixture
def security_id(client, bearer):
    response = client.get("/upload/config", headers=bearer)
    assert response.status_code == 200
    return response.json()["SecurityID"]


def post_chunk(client, bearer, security_id, data, name="report.pdf", size=10, field="Uploads", **extra):
    headers = {
        **bearer,
        "X-File-Name": quote(name),
        "X-File-Size": str(size),
        "X-File-Type": "application/pdf",
        "X-Requested-With": "XMLHttpRequest",
        **extra,
    }
    form = {"SecurityID": security_id} if security_id is not None else {}
    return client.post(
        "/upload",
        headers=headers,
        files={field: ("blob", data, "application/octet-stream")},
        data=form,
    )


def test_config_exposes_max_chunk_size(client, bearer, app_auth):
    response = client.get("/upload/config", headers=bearer)

    body = response.json()
    assert body["maxChunkSize"] == round(1024 * 0.9)
    assert body["fieldName"] == "Uploads"
    app_auth.verify_security_token(body["SecurityID"], "alice", "Uploads")


def test_chunked_upload_over_http(client, bearer, security_id, perm_dir):
    first = post_chunk(client, bearer, security_id, b"abcdef")

    assert first.status_code == 200
    assert first.headers["content-type"].startswith("text/plain")
    assert first.json() == [{"ok": "6/10", "bytesWritten": 6, "totalSize": 10}]

    second = post_chunk(client, bearer, security_id, b"ghij")

    assert second.status_code == 200
    [attributes] = second.json()
    assert attributes["name"] == "report.pdf"
    assert attributes["size"] == 10
    assert attributes["type"] == "application/pdf"
    assert attributes["url"] == f"/assets/{attributes['filename']}"
    assert (perm_dir / attributes["filename"]).read_bytes() == b"abcdefghij"


def test_bracketed_field_name_is_accepted(client, bearer, security_id):
    response = post_chunk(client, bearer, security_id, b"abc", field="Uploads[]")

    assert response.json()[0]["bytesWritten"] == 3


def test_percent_encoded_file_name(client, bearer, security_id):
    name = "résumé final.pdf"
    post_chunk(client, bearer, security_id, b"abcdef", name=name)

    response = post_chunk(client, bearer, security_id, b"ghij", name=name)

    assert response.json()[0]["name"] == name


def test_whole_file_upload(client, bearer, security_id, perm_dir, temp_dir):
    data = b"\xff\xd8" + b"j" * 498
    response = client.post(
        "/upload",
        headers=bearer,
        files={"Uploads": ("photo.jpg", data, "image/jpeg")},
        data={"SecurityID": security_id},
    )

    [attributes] = response.json()
    assert response.status_code == 200
    assert attributes["name"] == "photo.jpg"
    assert attributes["type"] == "image/jpeg"
    assert (perm_dir / attributes["filename"]).read_bytes() == data
    assert files_in(temp_dir) == []


def test_overshoot_is_reported(client, bearer, security_id, temp_dir):
    post_chunk(client, bearer, security_id, b"abcdef")

    response = post_chunk(client, bearer, security_id, b"ghijkl")

    assert response.status_code == 400
    assert "error" in response.json()[0]
    assert files_in(temp_dir) == []


def test_offset_mismatch_reports_expected_offset(client, bearer, security_id):
    post_chunk(client, bearer, security_id, b"abcdef", **{"X-File-Offset": "0"})

    response = post_chunk(client, bearer, security_id, b"abcdef", **{"X-File-Offset": "0"})

    assert response.status_code == 409
    assert response.json() == [
        {"error": "Offset mismatch: expected 6, got 0", "expectedOffset": 6}
    ]


def test_invalid_size_header(client, bearer, security_id, temp_dir):
    response = post_chunk(client, bearer, security_id, b"abc", **{"X-File-Size": "ten"})

    assert response.status_code == 400
    assert response.json() == [{"error": "Invalid chunk headers"}]
    assert files_in(temp_dir) == []


def test_missing_bearer_token(client, security_id):
    response = post_chunk(client, {}, security_id, b"abc")

    assert response.status_code == 401


def test_user_without_upload_scope(client, app_auth, security_id, temp_dir):
    token = app_auth.create_access_token("alice", scopes=[])

    response = post_chunk(client, {"Authorization": f"Bearer {token}"}, security_id, b"abc")

    assert response.status_code == 403
    assert response.json() == [{"error": "Upload not permitted"}]
    assert files_in(temp_dir) == []


def test_security_token_is_not_an_access_token(client, security_id):
    response = post_chunk(client, {"Authorization": f"Bearer {security_id}"}, security_id, b"abc")

    assert response.status_code == 401


@pytest.mark.parametrize("token", [None, "forged"])
def test_failed_csrf_check_writes_nothing(client, bearer, temp_dir, perm_dir, token):
    response = post_chunk(client, bearer, token, b"abc")

    assert response.status_code == 400
    assert "error" in response.json()[0]
    assert files_in(temp_dir) == []
    assert files_in(perm_dir) == []


def test_status_endpoint(client, bearer, security_id):
    post_chunk(client, bearer, security_id, b"abcdef")

    response = client.get(
        "/upload/status",
        params={"filename": "report.pdf", "SecurityID": security_id},
        headers=bearer,
    )

    body = response.json()
    assert body["status"] == "pending"
    assert body["bytesWritten"] == 6
    assert body["totalSize"] == 10

    missing = client.get(
        "/upload/status",
        params={"filename": "other.pdf", "SecurityID": security_id},
        headers=bearer,
    )
    assert missing.json() == {"status": "not found"}


def test_file_exists(client, bearer, security_id):
    assert client.get("/upload/fileexists", params={"filename": "report.pdf"}, headers=bearer).json() == {
        "exists": False
    }

    post_chunk(client, bearer, security_id, b"abcdef")
    post_chunk(client, bearer, security_id, b"ghij")

    response = client.get("/upload/fileexists", params={"filename": "report.pdf"}, headers=bearer)
    assert response.json() == {"exists": True}


def test_malformed_headers_without_upload_scope_are_not_parsed(client, app_auth, security_id, temp_dir):
    token = app_auth.create_access_token("alice", scopes=[])

    response = post_chunk(
        client, {"Authorization": f"Bearer {token}"}, security_id, b"abc", **{"X-File-Size": "ten"}
    )

    assert response.status_code == 403
    assert response.json() == [{"error": "Upload not permitted"}]
    assert files_in(temp_dir) == []


def test_malformed_headers_without_security_token_fail_csrf_first(client, bearer, temp_dir):
    response = post_chunk(client, bearer, None, b"abc", **{"X-File-Size": "ten"})

    assert response.status_code == 400
    assert response.json() == [{"error": "Missing security token"}]


def test_storage_failure_is_a_json_error(client, bearer, security_id, temp_dir):
    key = derive_session_key(security_id, "report.pdf")
    (temp_dir / f"{key}.json.tmp").mkdir()

    response = post_chunk(client, bearer, security_id, b"abcdef")

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("text/plain")
    assert response.json() == [{"error": "Could not record the upload session"}]
