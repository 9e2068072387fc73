import app as server
from conftest import auth_headers, seed_champion, seed_user, points_of


def test_list_champions_includes_odds(client, db):
    seed_champion(db, "Zed")
    seed_champion(db, "Amy", is_eliminated=True)

    resp = client.get("/api/champions")
    assert resp.status_code == 200
    data = resp.get_json()
    assert [c["name"] for c in data] == ["Amy", "Zed"]
    assert data[0]["odds_for"] == 0
    assert data[1]["odds_for"] == 2.5
    assert data[1]["odds_against"] == 1.5


def test_quote(client, db):
    champion_id = seed_champion(db, "Dan")
    resp = client.get(f"/api/bets/quote?champion_id={champion_id}&is_for=false&amount=10")
    assert resp.status_code == 200
    assert resp.get_json()["odds"] == 1.5
    assert resp.get_json()["potential_payout"] == 15


def test_place_bet_debits_points_and_logs_transaction(client, db):
    user_id = seed_user(db, "Dan", points=100)
    champion_id = seed_champion(db, "Sam")

    resp = client.post(
        "/api/bets",
        json={"champion_id": champion_id, "amount": 40, "is_for": True},
        headers=auth_headers(user_id),
    )
    assert resp.status_code == 201, resp.get_json()
    data = resp.get_json()
    assert data["points"] == 60
    assert data["bet"]["odds"] == 2.5
    assert data["bet"]["potential_payout"] == 100
    assert data["bet"]["champion_name"] == "Sam"

    assert points_of(db, user_id) == 60
    txs = db.rows("transactions")
    assert len(txs) == 1
    assert txs[0]["amount"] == -40
    assert txs[0]["type"] == "bet"
    assert txs[0]["reference_id"] == data["bet"]["id"]


def test_place_bet_rejects_bad_amounts(client, db):
    user_id = seed_user(db, "Dan", points=100)
    champion_id = seed_champion(db, "Sam")
    headers = auth_headers(user_id)

    for amount in (0, -5, 2.5, "ten", None):
        resp = client.post("/api/bets", json={"champion_id": champion_id, "amount": amount, "is_for": True}, headers=headers)
        assert resp.status_code == 400, amount

    assert points_of(db, user_id) == 100
    assert db.rows("bets") == []


def test_place_bet_with_insufficient_points(client, db):
    user_id = seed_user(db, "Dan", points=10)
    champion_id = seed_champion(db, "Sam")

    resp = client.post(
        "/api/bets",
        json={"champion_id": champion_id, "amount": 11, "is_for": False},
        headers=auth_headers(user_id),
    )
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Insufficient points"
    assert points_of(db, user_id) == 10
    assert db.rows("bets") == []


def test_cannot_bet_on_eliminated_champion(client, db):
    user_id = seed_user(db, "Dan", points=100)
    champion_id = seed_champion(db, "Sam", is_eliminated=True)

    resp = client.post(
        "/api/bets",
        json={"champion_id": champion_id, "amount": 5, "is_for": False},
        headers=auth_headers(user_id),
    )
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Cannot bet on eliminated champions"


def test_unknown_champion(client, db):
    user_id = seed_user(db, "Dan", points=100)
    resp = client.post(
        "/api/bets",
        json={"champion_id": "not-a-uuid", "amount": 5, "is_for": True},
        headers=auth_headers(user_id),
    )
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Invalid champion selection"


def test_betting_closes_after_winner(client, db):
    user_id = seed_user(db, "Dan", points=100)
    seed_champion(db, "Max", is_winner=True)
    other = seed_champion(db, "Sam")

    resp = client.post(
        "/api/bets",
        json={"champion_id": other, "amount": 5, "is_for": False},
        headers=auth_headers(user_id),
    )
    assert resp.status_code == 400
    assert "closed" in resp.get_json()["error"]


def test_failed_bet_insert_refunds_stake(client, db):
    user_id = seed_user(db, "Dan", points=100)
    champion_id = seed_champion(db, "Sam")
    db.fail_on.add(("bets", "insert"))

    resp = client.post(
        "/api/bets",
        json={"champion_id": champion_id, "amount": 30, "is_for": True},
        headers=auth_headers(user_id),
    )
    assert resp.status_code == 500
    assert points_of(db, user_id) == 100
    assert [t["type"] for t in db.rows("transactions")] == ["bet", "refund"]


def test_points_debit_retries_when_balance_moves(client, db):
    user_id = seed_user(db, "Dan", points=100)
    champion_id = seed_champion(db, "Sam")

    # Another request spends 50 points between our read and our write, once
    state = {"fired": False}

    def concurrent_spend(table, op, query):
        if table == "users" and op == "update" and not state["fired"]:
            state["fired"] = True
            db.row("users", user_id)["points"] = 50

    db.hooks.append(concurrent_spend)

    resp = client.post(
        "/api/bets",
        json={"champion_id": champion_id, "amount": 40, "is_for": True},
        headers=auth_headers(user_id),
    )
    assert resp.status_code == 201
    assert points_of(db, user_id) == 10
    assert len(db.rows("transactions")) == 1


def test_points_debit_gives_up_on_constant_contention(client, db):
    user_id = seed_user(db, "Dan", points=100)

    def always_moving(table, op, query):
        if table == "users" and op == "update":
            db.row("users", user_id)["points"] += 1

    db.hooks.append(always_moving)

    with server.app.app_context():
        try:
            server.adjust_points(user_id, -10, "bet", "test")
            raised = None
        except server.APIError as e:
            raised = e

    assert raised is not None
    assert raised.status_code == 409


def test_list_bets_scopes(client, db, admin_id):
    dan = seed_user(db, "Dan", points=100)
    sam = seed_user(db, "Sam", points=100)
    champion_id = seed_champion(db, "Max")

    for user in (dan, sam):
        client.post("/api/bets", json={"champion_id": champion_id, "amount": 10, "is_for": True}, headers=auth_headers(user))

    mine = client.get("/api/bets", headers=auth_headers(dan)).get_json()
    assert len(mine) == 1 and mine[0]["user_id"] == dan

    assert client.get("/api/bets?scope=all", headers=auth_headers(dan)).status_code == 403

    everything = client.get("/api/bets?scope=all", headers=auth_headers(admin_id)).get_json()
    assert len(everything) == 2

    resolved = client.get("/api/bets?status=resolved", headers=auth_headers(dan)).get_json()
    assert resolved == []
