from social.hashing import hash_password, verify_password


def test_password_verifies_against_its_own_hash():
    hashed = hash_password("Passw0rd!", rounds=4)

    assert hashed != "Passw0rd!"
    assert verify_password("Passw0rd!", hashed)


def test_wrong_password_does_not_verify():
    hashed = hash_password("Passw0rd!", rounds=4)

    assert not verify_password("passw0rd!", hashed)


def test_hashes_are_salted():
    assert hash_password("Passw0rd!", rounds=4) != hash_password("Passw0rd!", rounds=4)


def test_malformed_stored_hash_is_a_mismatch_not_an_error():
    assert verify_password("Passw0rd!", "not-a-bcrypt-hash") is False
    assert verify_password("Passw0rd!", "") is False


def test_configured_cost_is_used():
    # conftest sets BCRYPT_ROUNDS=4
    assert hash_password("Passw0rd!").startswith("$2b$04$")
