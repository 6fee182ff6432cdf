import requests


def test_scanner_page_starts_camera(user_client, readers, scanner):
    resp = user_client.get("/scanner")
    assert resp.status_code == 200
    assert scanner.active
    assert readers.created[0].starts == 1
    with user_client.session_transaction() as s:
        assert s["current_page"] == "scanner"


def test_leaving_scanner_stops_camera_and_return_reuses_reader(user_client, readers, scanner):
    user_client.get("/scanner")
    user_client.get("/history")
    assert not scanner.active
    assert readers.created[0].stops == 1

    user_client.get("/scanner")
    assert scanner.active
    assert len(readers.created) == 1
    assert readers.created[0].starts == 2


def test_moving_between_other_pages_leaves_camera_alone(user_client, readers):
    user_client.get("/history")
    user_client.get("/reports")
    assert readers.created == []


def test_camera_failure_shows_toast(user_client, readers, scanner):
    readers.fail_start = True
    resp = user_client.get("/scanner")
    assert b"Cannot access camera" in resp.data
    assert not scanner.active


def test_scanner_shows_today_counts(user_client, http):
    http.on("GET", "/scans/stats", body={"today": {"total": 4, "match": 3, "not_match": 1}})
    resp = user_client.get("/scanner")
    assert b"Today: <b>4</b>" in resp.data


def test_decoded_barcode_is_polled_then_shown(user_client, readers):
    user_client.get("/scanner")
    readers.created[0].decode("UNIT-9")

    status = user_client.get("/scanner/status").get_json()
    assert status["barcode"] == "UNIT-9"
    assert status["active"] is False

    resp = user_client.get("/scanner")
    assert b"UNIT-9" in resp.data
    assert b"Is the grade correct?" in resp.data
    # the result view doesn't restart the camera
    assert readers.created[0].starts == 1


def test_submit_without_barcode_does_nothing(user_client, http):
    resp = user_client.post("/scanner/submit", data={"is_match": "true"})
    assert resp.status_code == 302
    assert http.last("POST", "/scans") is None


def test_submit_match_posts_and_schedules_restart(user_client, http, readers, scanner, scheduler):
    http.on("POST", "/scans", 201, {"id": 1})
    user_client.get("/scanner")
    readers.created[0].decode("UNIT-9")

    resp = user_client.post("/scanner/submit",
                            data={"is_match": "true", "notes": " ok "},
                            follow_redirects=True)
    assert b"Marked MATCH" in resp.data
    assert http.last("POST", "/scans")["json"] == {
        "barcode": "UNIT-9", "is_match": True, "notes": "ok",
    }
    assert scanner.scanned_barcode is None
    assert not scanner.result_visible
    # restart waits for the scheduler, not the page reload
    assert readers.created[0].starts == 1
    assert len(scheduler.jobs) == 1
    scheduler.run_all()
    assert scanner.active
    assert readers.created[0].starts == 2


def test_submit_not_match(user_client, http, readers):
    http.on("POST", "/scans", 201, {"id": 2})
    user_client.get("/scanner")
    readers.created[0].decode("UNIT-10")
    resp = user_client.post("/scanner/submit", data={"is_match": "false"}, follow_redirects=True)
    assert b"Marked NOT MATCH" in resp.data
    assert http.last("POST", "/scans")["json"]["is_match"] is False


def test_submit_api_error_keeps_barcode(user_client, http, readers, scanner, scheduler):
    http.on("POST", "/scans", 400, {"error": "Key: 'barcode' failed"})
    user_client.get("/scanner")
    readers.created[0].decode("UNIT-11")
    resp = user_client.post("/scanner/submit", data={"is_match": "true"}, follow_redirects=True)
    assert b"Key: &#39;barcode&#39; failed" in resp.data
    assert scanner.scanned_barcode == "UNIT-11"
    assert scheduler.jobs == []


def test_submit_server_unreachable(user_client, http, readers):
    http.fail("POST", "/scans", requests.Timeout("slow"))
    user_client.get("/scanner")
    readers.created[0].decode("UNIT-12")
    resp = user_client.post("/scanner/submit", data={"is_match": "true"}, follow_redirects=True)
    assert b"Error saving scan" in resp.data


def test_manual_barcode_entry(user_client, scanner):
    user_client.get("/scanner")
    user_client.post("/scanner/manual", data={"barcode": "KB-77"})
    assert scanner.scanned_barcode == "KB-77"
    assert not scanner.active


def test_stop_button(user_client, readers, scanner):
    user_client.get("/scanner")
    resp = user_client.post("/scanner/stop")
    assert resp.headers["Location"].endswith("/scanner/idle")
    assert not scanner.active
    assert readers.created[0].stops == 1
