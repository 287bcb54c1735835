from datetime import timedelta
import uuid

from sqlalchemy import update

from clock import utcnow
from conftest import bearer
from models import Task


def _create(client, body, title="Buy milk", description=None):
    resp = client.post("/tasks", json={"title": title, "description": description}, headers=bearer(body))
    assert resp.status_code == 201, resp.text
    return resp.json()


def _search(client, body, **params):
    resp = client.get("/tasks", params=params, headers=bearer(body))
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_buy_milk_lifecycle(client, register):
    _, body = register()
    task = _create(client, body, description="2 liters")
    assert task["title"] == "Buy milk"
    assert task["description"] == "2 liters"
    assert task["status"] == "incomplete"
    assert task["completed_at"] is None
    assert task["owner_id"] == body["user"]["id"]

    done = client.patch(f"/tasks/{task['id']}", json={"status": "complete"}, headers=bearer(body)).json()
    assert done["status"] == "complete"
    assert done["completed_at"] is not None
    assert done["title"] == "Buy milk"
    assert done["description"] == "2 liters"

    # тот же статус повторно: completed_at не сдвигается
    again = client.patch(f"/tasks/{task['id']}", json={"status": "complete"}, headers=bearer(body)).json()
    assert again["completed_at"] == done["completed_at"]

    reopened = client.patch(f"/tasks/{task['id']}", json={"status": "incomplete"}, headers=bearer(body)).json()
    assert reopened["status"] == "incomplete"
    assert reopened["completed_at"] is None

    fetched = client.get(f"/tasks/{task['id']}", headers=bearer(body)).json()
    assert fetched == reopened


def test_foreign_task_is_not_found(client, register):
    _, alice = register()
    _, bob = register()
    task = _create(client, alice)

    assert client.get(f"/tasks/{task['id']}", headers=bearer(bob)).status_code == 404
    assert client.patch(f"/tasks/{task['id']}", json={"title": "mine"}, headers=bearer(bob)).status_code == 404
    assert client.delete(f"/tasks/{task['id']}", headers=bearer(bob)).status_code == 404
    assert _search(client, bob)["pagination"]["records"] == 0

    # a missing id looks exactly the same
    missing = client.get(f"/tasks/{uuid.uuid4()}", headers=bearer(bob))
    foreign = client.get(f"/tasks/{task['id']}", headers=bearer(bob))
    assert missing.json() == foreign.json()
    assert client.get(f"/tasks/{task['id']}", headers=bearer(alice)).status_code == 200


def test_create_validation(client, register):
    _, body = register()
    headers = bearer(body)
    assert client.post("/tasks", json={"title": ""}, headers=headers).status_code == 422
    assert client.post("/tasks", json={"title": "   "}, headers=headers).status_code == 422
    assert client.post("/tasks", json={"title": "x" * 101}, headers=headers).status_code == 422
    assert client.post("/tasks", json={"title": "ok", "description": "d" * 501}, headers=headers).status_code == 422
    assert client.post("/tasks", json={"description": "no title"}, headers=headers).status_code == 422

    assert client.post("/tasks", json={"title": "x" * 100, "description": "d" * 500}, headers=headers).status_code == 201
    assert _search(client, body)["pagination"]["records"] == 1


def test_patch_semantics(client, register):
    _, body = register()
    task = _create(client, body, title="Write report", description="quarterly")
    url = f"/tasks/{task['id']}"

    assert client.patch(url, json={"title": None}, headers=bearer(body)).status_code == 422
    assert client.patch(url, json={"title": "y" * 101}, headers=bearer(body)).status_code == 422
    assert client.patch(url, json={"description": "d" * 501}, headers=bearer(body)).status_code == 422

    # пустое тело ничего не меняет
    unchanged = client.patch(url, json={}, headers=bearer(body)).json()
    assert unchanged == task

    renamed = client.patch(url, json={"title": "Write annual report"}, headers=bearer(body)).json()
    assert renamed["title"] == "Write annual report"
    assert renamed["description"] == "quarterly"
    assert renamed["status"] == "incomplete"

    cleared = client.patch(url, json={"description": None}, headers=bearer(body)).json()
    assert cleared["description"] is None
    assert cleared["title"] == "Write annual report"


def test_delete_then_get(client, register):
    _, body = register()
    task = _create(client, body)
    resp = client.delete(f"/tasks/{task['id']}", headers=bearer(body))
    assert resp.status_code == 204
    assert resp.content == b""
    assert client.get(f"/tasks/{task['id']}", headers=bearer(body)).status_code == 404
    assert client.delete(f"/tasks/{task['id']}", headers=bearer(body)).status_code == 404


def test_search_pagination_metadata(client, register):
    _, body = register()
    for i in range(5):
        _create(client, body, title=f"task {i}")

    page = _search(client, body, page=2, limit=2)
    assert page["pagination"] == {"current": 2, "limit": 2, "records": 5, "pages": 3}
    assert len(page["data"]) == 2

    last = _search(client, body, page=3, limit=2)
    assert len(last["data"]) == 1

    beyond = _search(client, body, page=10, limit=2)
    assert beyond["data"] == []
    assert beyond["pagination"]["records"] == 5

    default = _search(client, body)
    assert default["pagination"]["current"] == 1
    assert default["pagination"]["limit"] == 20


def test_search_clamps_paging(client, register):
    _, body = register()
    _create(client, body)

    assert _search(client, body, limit=0)["pagination"]["limit"] == 1
    assert _search(client, body, limit=500)["pagination"]["limit"] == 100
    assert _search(client, body, page=0)["pagination"]["current"] == 1
    assert _search(client, body, page=-3)["pagination"]["current"] == 1

    huge = _search(client, body, page=10**20, limit=10)
    assert huge["data"] == []
    assert huge["pagination"]["records"] == 1
    assert huge["pagination"]["current"] == (2**63 - 1) // 10 + 1


def test_search_is_idempotent_and_ordered(client, register, store):
    _, body = register()
    ids = [_create(client, body, title=f"t{i}")["id"] for i in range(4)]
    base = utcnow()
    for offset, task_id in enumerate(ids):
        store.run(
            update(Task).where(Task.id == uuid.UUID(task_id)).values(created_at=base + timedelta(minutes=offset))
        )

    first = _search(client, body)
    second = _search(client, body)
    assert first == second
    assert [t["id"] for t in first["data"]] == list(reversed(ids))


def test_search_filters(client, register):
    _, body = register()
    milk = _create(client, body, title="Buy milk")
    _create(client, body, title="Call mom", description="about the MILK order")
    _create(client, body, title="100% done")
    _create(client, body, title="Walk dog")
    client.patch(f"/tasks/{milk['id']}", json={"status": "complete"}, headers=bearer(body))

    assert _search(client, body, q="milk")["pagination"]["records"] == 2
    assert _search(client, body, q="MiLk", status="complete")["pagination"]["records"] == 1
    assert _search(client, body, status="incomplete")["pagination"]["records"] == 3

    # % в запросе трактуется буквально
    percent = _search(client, body, q="%")
    assert [t["title"] for t in percent["data"]] == ["100% done"]

    nothing = _search(client, body, q="no such thing")
    assert nothing["data"] == []
    assert nothing["pagination"]["records"] == 0
    assert nothing["pagination"]["pages"] == 0


def test_search_completed_range(client, register):
    _, body = register()
    task = _create(client, body)
    _create(client, body, title="still open")
    client.patch(f"/tasks/{task['id']}", json={"status": "complete"}, headers=bearer(body))

    since = (utcnow() - timedelta(hours=1)).isoformat()
    found = _search(client, body, completed_from=since)
    assert [t["id"] for t in found["data"]] == [task["id"]]

    future = (utcnow() + timedelta(hours=1)).isoformat()
    assert _search(client, body, completed_from=future)["data"] == []
    assert _search(client, body, created_to=future)["pagination"]["records"] == 2


def test_search_incomplete_first(client, register):
    _, body = register()
    tasks = [_create(client, body, title=f"t{i}") for i in range(4)]
    for t in tasks[2:]:
        client.patch(f"/tasks/{t['id']}", json={"status": "complete"}, headers=bearer(body))

    statuses = [t["status"] for t in _search(client, body, incomplete_first=True)["data"]]
    assert statuses == ["incomplete", "incomplete", "complete", "complete"]


def test_tasks_require_user_token(client):
    assert client.post("/tasks", json={"title": "x"}).status_code == 401
