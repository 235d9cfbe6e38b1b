import asyncio
import tempfile
import unittest
import uuid
from datetime import timedelta
from unittest import mock

from cpauth.auth import AuthOrchestrator
from cpauth.constants import P
from cpauth.crypto import ChaumPedersenProver, generate_secret
from cpauth.errors import (
    AuthenticationFailed,
    InvalidInput,
    NotFound,
    StoreUnavailable,
    VerificationFailed,
)
from cpauth.models import ActiveSession, AuthSession
from helpers import FakeClock, count_rows, make_store


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.store = make_store(self._tmp.name, self.clock)
        await self.store.create_schema()
        self.orchestrator = AuthOrchestrator(
            self.store,
            challenge_ttl=timedelta(minutes=5),
            session_ttl=timedelta(hours=1),
        )
        self.prover = ChaumPedersenProver(generate_secret())
        y1, y2 = self.prover.public_key()
        await self.orchestrator.register("alice", y1, y2)

    async def asyncTearDown(self) -> None:
        await self.store.close()
        self._tmp.cleanup()

    async def _begin(self, prover: ChaumPedersenProver | None = None):
        prover = prover or self.prover
        commitment = prover.commit()
        challenge = await self.orchestrator.begin_authentication("alice", commitment.r1, commitment.r2)
        return commitment, challenge


class TestRegistration(OrchestratorTestCase):
    async def test_registered_key_is_stored(self) -> None:
        user = await self.store.get_user_by_username("alice")
        self.assertEqual((user.y1, user.y2), self.prover.public_key())

    async def test_non_group_key_rejected(self) -> None:
        y1, _ = self.prover.public_key()
        with self.assertRaises(InvalidInput):
            await self.orchestrator.register("bob", y1, P - 1)
        with self.assertRaises(InvalidInput):
            await self.orchestrator.register("bob", 0, y1)
        self.assertFalse(await self.store.user_exists("bob"))


class TestAuthentication(OrchestratorTestCase):
    async def test_full_login(self) -> None:
        commitment, challenge = await self._begin()
        self.assertEqual((challenge.r1, challenge.r2), (commitment.r1, commitment.r2))

        response = self.prover.respond(challenge.c, commitment)
        result = await self.orchestrator.verify_authentication(challenge.auth_id, response)

        self.assertEqual(result.expires_at, self.clock.now + timedelta(hours=1))
        session = await self.orchestrator.get_session(result.session_id)
        user = await self.store.get_user_by_username("alice")
        self.assertEqual(session.user_id, user.id)
        stored = await self.store.get_auth_challenge(challenge.auth_id)
        self.assertTrue(stored.verified)

    async def test_rejected_proof_leaves_challenge_retryable(self) -> None:
        commitment, challenge = await self._begin()
        impostor = ChaumPedersenProver(generate_secret())

        with self.assertRaises(VerificationFailed):
            await self.orchestrator.verify_authentication(challenge.auth_id, impostor.respond(challenge.c, commitment))
        stored = await self.store.get_auth_challenge(challenge.auth_id)
        self.assertFalse(stored.verified)
        self.assertEqual(await count_rows(self.store, ActiveSession), 0)

        response = self.prover.respond(challenge.c, commitment)
        result = await self.orchestrator.verify_authentication(challenge.auth_id, response)
        self.assertTrue(result.session_id)

    async def test_session_survives_failing_session_reads(self) -> None:
        commitment, challenge = await self._begin()
        response = self.prover.respond(challenge.c, commitment)

        outage = mock.AsyncMock(side_effect=StoreUnavailable("store unreachable", operation="get_active_session"))
        with mock.patch.object(self.store, "get_active_session", outage):
            result = await self.orchestrator.verify_authentication(challenge.auth_id, response)
        outage.assert_not_awaited()

        self.assertEqual(await count_rows(self.store, ActiveSession), 1)
        session = await self.orchestrator.get_session(result.session_id)
        self.assertEqual(session.expires_at, result.expires_at)

    async def test_oversized_response_is_rejected(self) -> None:
        commitment, challenge = await self._begin()
        with self.assertRaises(VerificationFailed):
            await self.orchestrator.verify_authentication(challenge.auth_id, 10**5000)
        self.assertEqual(await count_rows(self.store, ActiveSession), 0)

    async def test_replay_of_consumed_challenge_fails(self) -> None:
        commitment, challenge = await self._begin()
        response = self.prover.respond(challenge.c, commitment)
        await self.orchestrator.verify_authentication(challenge.auth_id, response)

        with self.assertRaises(NotFound):
            await self.orchestrator.verify_authentication(challenge.auth_id, response)
        self.assertEqual(await count_rows(self.store, ActiveSession), 1)

    async def test_concurrent_verification_yields_one_session(self) -> None:
        commitment, challenge = await self._begin()
        response = self.prover.respond(challenge.c, commitment)

        results = await asyncio.gather(
            *(self.orchestrator.verify_authentication(challenge.auth_id, response) for _ in range(20)),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        self.assertEqual(len(results) - len(failures), 1)
        self.assertTrue(all(isinstance(f, AuthenticationFailed) for f in failures))
        self.assertEqual(await count_rows(self.store, ActiveSession), 1)

    async def test_expired_challenge_is_terminal(self) -> None:
        commitment, challenge = await self._begin()
        self.clock.advance(minutes=6)
        with self.assertRaises(NotFound):
            await self.orchestrator.verify_authentication(challenge.auth_id, self.prover.respond(challenge.c, commitment))

    async def test_unknown_user_and_unknown_challenge_fail_generically(self) -> None:
        with self.assertRaises(AuthenticationFailed):
            await self.orchestrator.begin_authentication("nobody", 4, 4)
        with self.assertRaises(AuthenticationFailed):
            await self.orchestrator.verify_authentication(str(uuid.uuid4()), 1)

    async def test_invalid_commitment_creates_no_challenge(self) -> None:
        with self.assertRaises(InvalidInput):
            await self.orchestrator.begin_authentication("alice", P - 1, 4)
        with self.assertRaises(InvalidInput):
            await self.orchestrator.begin_authentication("alice", -5, 4)
        self.assertEqual(await count_rows(self.store, AuthSession), 0)

    async def test_negative_response_rejected(self) -> None:
        _, challenge = await self._begin()
        with self.assertRaises(InvalidInput):
            await self.orchestrator.verify_authentication(challenge.auth_id, -1)


class TestSessions(OrchestratorTestCase):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        commitment, challenge = await self._begin()
        result = await self.orchestrator.verify_authentication(
            challenge.auth_id, self.prover.respond(challenge.c, commitment)
        )
        self.session_id = result.session_id

    async def test_touch_and_logout(self) -> None:
        self.clock.advance(minutes=1)
        await self.orchestrator.touch_session(self.session_id)
        session = await self.orchestrator.get_session(self.session_id)
        self.assertEqual(session.last_activity, self.clock.now)

        await self.orchestrator.logout(self.session_id)
        await self.orchestrator.logout(self.session_id)
        with self.assertRaises(NotFound):
            await self.orchestrator.get_session(self.session_id)


class _SlowStore:
    async def get_user_by_username(self, username):
        await asyncio.sleep(5)


class TestDegradedMode(unittest.IsolatedAsyncioTestCase):
    async def test_every_operation_fails_fast_without_store(self) -> None:
        orchestrator = AuthOrchestrator(None)
        self.assertTrue(orchestrator.degraded)
        calls = [
            orchestrator.register("alice", 4, 4),
            orchestrator.begin_authentication("alice", 4, 4),
            orchestrator.verify_authentication("auth", 1),
            orchestrator.get_session("session"),
            orchestrator.touch_session("session"),
            orchestrator.logout("session"),
        ]
        for call in calls:
            with self.assertRaises(StoreUnavailable):
                await call

    async def test_slow_store_times_out(self) -> None:
        orchestrator = AuthOrchestrator(_SlowStore(), operation_timeout=0.05)
        with self.assertRaises(StoreUnavailable):
            await orchestrator.begin_authentication("alice", 4, 4)


if __name__ == "__main__":
    unittest.main()
