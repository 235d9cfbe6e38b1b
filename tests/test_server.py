import tempfile
import unittest

from fastapi.testclient import TestClient

from cpauth.constants import P
from cpauth.crypto import ChaumPedersenProver, generate_secret
from cpauth.server import create_app
from cpauth.settings import AuthSettings, DatabaseSettings
from helpers import sqlite_settings


def _settings() -> AuthSettings:
    return AuthSettings(challenge_ttl_seconds=60, session_ttl_seconds=3600, sweep_interval_seconds=60)


class TestServerEndpoints(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        app = create_app(settings=_settings(), db_settings=sqlite_settings(self._tmp.name))
        self.client = TestClient(app)
        self.client.__enter__()
        self.prover = ChaumPedersenProver(generate_secret())

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        self._tmp.cleanup()

    def _register(self, username: str = "alice"):
        y1, y2 = self.prover.public_key()
        return self.client.post("/register", json={"username": username, "y1": str(y1), "y2": str(y2)})

    def _login(self, username: str = "alice") -> str:
        commitment = self.prover.commit()
        start = self.client.post(
            "/login/start",
            json={"username": username, "r1": str(commitment.r1), "r2": str(commitment.r2)},
        )
        self.assertEqual(start.status_code, 200)
        challenge = start.json()
        response = self.prover.respond(int(challenge["c"]), commitment)
        finish = self.client.post("/login/finish", json={"auth_id": challenge["auth_id"], "response": str(response)})
        self.assertEqual(finish.status_code, 200)
        return finish.json()["session_id"]

    def test_health(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_register(self) -> None:
        response = self._register()
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json(), {"username": "alice"})

        duplicate = self._register()
        self.assertEqual(duplicate.status_code, 409)

    def test_register_rejects_malformed_values(self) -> None:
        y1, y2 = self.prover.public_key()
        bad_digits = self.client.post("/register", json={"username": "bob", "y1": "12a", "y2": str(y2)})
        self.assertEqual(bad_digits.status_code, 400)
        not_in_group = self.client.post("/register", json={"username": "bob", "y1": str(y1), "y2": str(P - 1)})
        self.assertEqual(not_in_group.status_code, 400)

    def test_oversized_integers_are_bad_requests(self) -> None:
        _, y2 = self.prover.public_key()
        huge = "9" * 5000
        register = self.client.post("/register", json={"username": "bob", "y1": huge, "y2": str(y2)})
        self.assertEqual(register.status_code, 400)

        self._register()
        start = self.client.post("/login/start", json={"username": "alice", "r1": huge, "r2": huge})
        self.assertEqual(start.status_code, 400)

        finish = self.client.post(
            "/login/finish",
            json={"auth_id": "00000000-0000-4000-8000-000000000000", "response": huge},
        )
        self.assertEqual(finish.status_code, 400)

    def test_session_lifecycle(self) -> None:
        self._register()
        session_id = self._login()
        headers = {"Authorization": f"Bearer {session_id}"}

        session = self.client.get("/session", headers=headers)
        self.assertEqual(session.status_code, 200)
        self.assertIn("expires_at", session.json())

        self.assertEqual(self.client.post("/session/touch", headers=headers).status_code, 204)
        self.assertEqual(self.client.post("/logout", headers=headers).status_code, 204)
        self.assertEqual(self.client.get("/session", headers=headers).status_code, 401)

    def test_failed_logins_look_identical(self) -> None:
        self._register()
        commitment = self.prover.commit()
        start = self.client.post(
            "/login/start",
            json={"username": "alice", "r1": str(commitment.r1), "r2": str(commitment.r2)},
        ).json()

        wrong = self.client.post("/login/finish", json={"auth_id": start["auth_id"], "response": "1"})
        unknown = self.client.post(
            "/login/finish",
            json={"auth_id": "00000000-0000-4000-8000-000000000000", "response": "1"},
        )
        nobody = self.client.post(
            "/login/start",
            json={"username": "nobody", "r1": str(commitment.r1), "r2": str(commitment.r2)},
        )

        for reply in (wrong, unknown, nobody):
            self.assertEqual(reply.status_code, 401)
            self.assertEqual(reply.json(), {"detail": "authentication failed"})

    def test_consumed_challenge_cannot_be_replayed(self) -> None:
        self._register()
        commitment = self.prover.commit()
        start = self.client.post(
            "/login/start",
            json={"username": "alice", "r1": str(commitment.r1), "r2": str(commitment.r2)},
        ).json()
        body = {"auth_id": start["auth_id"], "response": str(self.prover.respond(int(start["c"]), commitment))}

        self.assertEqual(self.client.post("/login/finish", json=body).status_code, 200)
        self.assertEqual(self.client.post("/login/finish", json=body).status_code, 401)

    def test_logout_always_succeeds(self) -> None:
        self.assertEqual(self.client.post("/logout").status_code, 204)
        headers = {"Authorization": "Bearer not-a-session"}
        self.assertEqual(self.client.post("/logout", headers=headers).status_code, 204)

    def test_session_requires_token(self) -> None:
        self.assertEqual(self.client.get("/session").status_code, 401)


class TestDegradedServer(unittest.TestCase):
    def test_starts_without_database(self) -> None:
        db_settings = DatabaseSettings(url="sqlite+aiosqlite:////nonexistent-cpauth-dir/missing/cpauth.db")
        app = create_app(settings=_settings(), db_settings=db_settings)
        with TestClient(app) as client:
            self.assertEqual(client.get("/health").json(), {"status": "degraded"})

            response = client.post("/register", json={"username": "alice", "y1": "4", "y2": "4"})
            self.assertEqual(response.status_code, 503)
            self.assertEqual(response.json(), {"detail": "service unavailable"})

            login = client.post("/login/start", json={"username": "alice", "r1": "4", "r2": "4"})
            self.assertEqual(login.status_code, 503)


if __name__ == "__main__":
    unittest.main()
