"""Rate-limit keys come from the resolved client address, not raw headers."""
from fastapi.testclient import TestClient

BOOKING_LIMIT = 3

PROXY = ("10.0.0.5", 5000)
DIRECT = ("198.51.100.20", 5000)


def book(client, service_id: str, hour: int, forwarded_for: str = None):
    headers = {"X-Forwarded-For": forwarded_for} if forwarded_for else {}
    return client.post("/api/public/appointments", headers=headers, json={
        "client_name": "Juan Perez",
        "client_phone": f"11223344{hour:02d}",
        "service_id": service_id,
        "appointment_at": f"2026-11-03T{hour:02d}:00:00Z",
    })


class TestBehindTrustedProxy:
    """Peer inside TRUSTED_PROXY_CIDRS: the right-most untrusted hop is the key."""

    def test_each_forwarded_client_has_its_own_bucket(self, api_env, make_client, seed):
        api_env.setenv("TRUSTED_PROXY_CIDRS", "10.0.0.0/8")
        client = make_client(peer=PROXY)
        service_id = seed()["Classic cut"]

        for hour in range(BOOKING_LIMIT):
            assert book(client, service_id, 8 + hour, forwarded_for="203.0.113.7").status_code == 201

        response = book(client, service_id, 12, forwarded_for="203.0.113.7")
        assert response.status_code == 429
        assert response.json()["code"] == "RATE_LIMITED"

        assert book(client, service_id, 13, forwarded_for="203.0.113.8").status_code == 201

    def test_spoofed_left_hops_do_not_change_the_key(self, api_env, make_client, seed):
        api_env.setenv("TRUSTED_PROXY_CIDRS", "10.0.0.0/8")
        client = make_client(peer=PROXY)
        service_id = seed()["Classic cut"]

        for hour in range(BOOKING_LIMIT):
            forwarded = f"192.0.2.{hour + 1}, 203.0.113.7, 10.0.0.9"
            assert book(client, service_id, 8 + hour, forwarded_for=forwarded).status_code == 201

        response = book(client, service_id, 12, forwarded_for="192.0.2.99, 203.0.113.7")
        assert response.status_code == 429


class TestDirectClient:
    """Peer outside the trusted ranges: X-Forwarded-For is ignored."""

    def test_forwarded_header_is_ignored(self, make_client, seed):
        client = make_client(peer=DIRECT)
        service_id = seed()["Classic cut"]

        for hour in range(BOOKING_LIMIT):
            forwarded = f"203.0.113.{hour + 1}"
            assert book(client, service_id, 8 + hour, forwarded_for=forwarded).status_code == 201

        response = book(client, service_id, 12, forwarded_for="203.0.113.200")
        assert response.status_code == 429

    def test_different_peers_have_separate_buckets(self, make_client, seed):
        first = make_client(peer=DIRECT)
        service_id = seed()["Classic cut"]
        for hour in range(BOOKING_LIMIT):
            assert book(first, service_id, 8 + hour).status_code == 201
        assert book(first, service_id, 12).status_code == 429

        second = TestClient(first.app, client=("198.51.100.21", 5000))

        assert book(second, service_id, 13).status_code == 201
