from helpers import TEST_PASSWORD, is_stored


def _signup(client, username="alice", email="alice@x.com", password=TEST_PASSWORD):
    return client.post(
        "/auth/signup",
        json={"username": username, "email": email, "password": password},
    )


def test_root(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json() == {"message": "Social API"}


def test_signup_creates_user(client):
    resp = _signup(client)

    assert resp.status_code == 201
    body = resp.json()
    assert body["message"] == "User created successfully"
    assert body["id"]


def test_signup_ignores_requested_role(client):
    resp = client.post(
        "/auth/signup",
        json={"username": "mallory", "email": "m@x.com", "password": TEST_PASSWORD, "role": "admin"},
    )
    assert resp.status_code == 201

    signin = client.post("/auth/signin", json={"email": "m@x.com", "password": TEST_PASSWORD})
    me = client.get(
        "/users/me", headers={"Authorization": f"Bearer {signin.json()['accessToken']}"}
    )
    assert me.json()["role"] == "user"


def test_signup_duplicate_email(client):
    _signup(client)

    resp = _signup(client, username="alice2")

    assert resp.status_code == 400
    assert resp.json()["message"] == "Email already exists"


def test_signup_duplicate_username(client):
    _signup(client)

    resp = _signup(client, email="other@x.com")

    assert resp.status_code == 400
    assert resp.json()["message"] == "Username already taken"


def test_signup_weak_password_lists_every_rule(client):
    resp = _signup(client, password="password")

    assert resp.status_code == 400
    body = resp.json()
    assert body["message"] == "password: Must contain one uppercase character"
    assert body["errors"]["password"] == [
        "Must contain one uppercase character",
        "Must contain one number",
        "Must contain one special character",
    ]


def test_signup_short_password(client):
    resp = _signup(client, password="Pa0!")

    assert resp.status_code == 400
    assert resp.json()["errors"]["password"] == ["Password should be atleast 8 characters"]


def test_signup_rejects_bad_username_and_email(client):
    resp = _signup(client, username="al ice", email="not-an-email")

    assert resp.status_code == 400
    errors = resp.json()["errors"]
    assert errors["username"] == ["Only alphabets, numbers, underscores and dots are allowed"]
    assert errors["email"] == ["Invalid email address"]


def test_signin_returns_token_pair_and_cookie(client, codec):
    user_id = _signup(client).json()["id"]

    resp = client.post("/auth/signin", json={"email": "alice@x.com", "password": TEST_PASSWORD})

    assert resp.status_code == 200
    body = resp.json()
    assert set(body) == {"accessToken", "refreshToken"}
    assert codec.verify_access(body["accessToken"]).claims.user_id == user_id
    assert codec.verify_refresh(body["refreshToken"]).claims.user_id == user_id
    assert resp.cookies.get("refreshToken") == body["refreshToken"]
    assert "httponly" in resp.headers["set-cookie"].lower()
    assert is_stored(body["refreshToken"], user_id)


def test_signin_failures_are_indistinguishable(client):
    _signup(client)

    wrong_password = client.post("/auth/signin", json={"email": "alice@x.com", "password": "nope"})
    unknown_email = client.post(
        "/auth/signin", json={"email": "nobody@x.com", "password": TEST_PASSWORD}
    )

    assert wrong_password.status_code == unknown_email.status_code == 401
    assert wrong_password.content == unknown_email.content
    assert wrong_password.json() == {"message": "Invalid email/password"}
    assert "set-cookie" not in wrong_password.headers


def test_signin_malformed_body_is_unauthorized(client):
    not_json = client.post(
        "/auth/signin", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    missing_field = client.post("/auth/signin", json={"email": "alice@x.com"})

    for resp in (not_json, missing_field):
        assert resp.status_code == 401
        assert resp.json() == {"message": "Invalid email/password"}


def test_logout_removes_refresh_token(client, signed_in):
    user = signed_in()

    resp = client.post(
        "/auth/logout",
        headers={"Authorization": f"Bearer {user['access']}", "Cookie": f"refreshToken={user['refresh']}"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"message": "Logged out successfully"}
    assert "Max-Age=0" in resp.headers["set-cookie"]
    assert not is_stored(user["refresh"], user["id"])


def test_logout_without_refresh_token_still_succeeds(client, signed_in):
    user = signed_in()

    resp = client.post("/auth/logout", headers={"Authorization": f"Bearer {user['access']}"})

    assert resp.status_code == 200
    assert is_stored(user["refresh"], user["id"])


def test_logout_requires_authentication(client, signed_in):
    user = signed_in()

    resp = client.post("/auth/logout", headers={"Cookie": f"refreshToken={user['refresh']}"})

    assert resp.status_code == 401
    assert is_stored(user["refresh"], user["id"])


def test_logout_cannot_revoke_someone_elses_token(client, signed_in):
    alice, bob = signed_in(), signed_in()

    client.post(
        "/auth/logout",
        headers={"Authorization": f"Bearer {alice['access']}", "Cookie": f"refreshToken={bob['refresh']}"},
    )

    assert is_stored(bob["refresh"], bob["id"])


def test_me_returns_profile(client, signed_in):
    user = signed_in()

    resp = client.get("/users/me", headers={"Authorization": f"Bearer {user['access']}"})

    assert resp.status_code == 200
    assert resp.json() == {
        "id": user["id"],
        "email": user["email"],
        "username": user["username"],
        "role": "user",
        "email_verified": False,
    }


def test_account_maintenance_routes_are_not_implemented(client):
    for path in ("/auth/forget-password", "/auth/change-email", "/auth/change-password", "/auth/verify-email"):
        resp = client.post(path)
        assert resp.status_code == 501
        assert resp.json() == {"message": "Not implemented"}


def test_metrics_exposes_auth_counters(client, signed_in):
    signed_in()

    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert "signins_total" in resp.text
    assert "api_requests_total" in resp.text


def test_logout_with_deeply_nested_body_still_succeeds(client, signed_in):
    user = signed_in()
    depth = 100_000

    resp = client.post(
        "/auth/logout",
        content=b"[" * depth + b"]" * depth,
        headers={"Authorization": f"Bearer {user['access']}", "Content-Type": "application/json"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"message": "Logged out successfully"}
