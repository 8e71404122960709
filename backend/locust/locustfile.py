"""
Locust Load Test Suite

Run scenarios (from backend/, so `app` is importable for seeding and tokens):
  locust -f locust/locustfile.py --tags concurrency  # Fight for the last slots
  locust -f locust/locustfile.py --tags read         # Event reads / refund quotes
  locust -f locust/locustfile.py --tags edge         # Bad input
  locust -f locust/locustfile.py                     # All tests
"""

import asyncio
import random
import uuid
from datetime import datetime, timezone, timedelta

from locust import HttpUser, task, between, tag, events

from app.core.security import create_access_token
from app.db.session import AsyncSessionLocal
from app.models.student import Student

SEEDED_STUDENTS = 500
SLOTS = 10

# Shared state
STUDENT_IDS = []
EVENT_IDS = []
CONCURRENCY_EVENT_ID = None
ADMIN_HEADERS = {"Authorization": f"Bearer {create_access_token({'sub': '1', 'role': 'ADMIN'})}"}


def student_headers(student_id: int) -> dict:
    token = create_access_token({"sub": str(student_id), "role": "STUDENT"}, timedelta(hours=2))
    return {"Authorization": f"Bearer {token}"}


async def seed_students(count: int) -> list[int]:
    batch = uuid.uuid4().hex[:6]
    async with AsyncSessionLocal() as session:
        students = [
            Student(registration_no=f"LOAD-{batch}-{i:05d}", full_name=f"Load Student {i}", school_id=1)
            for i in range(count)
        ]
        session.add_all(students)
        await session.commit()
        return [s.id for s in students]


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    """Setup: seed students straight into the database."""
    print("\n" + "=" * 60)
    print(f"SETUP: Seeding {SEEDED_STUDENTS} students...")
    print("=" * 60)
    STUDENT_IDS.extend(asyncio.run(seed_students(SEEDED_STUDENTS)))


def future_date(days: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


class ConcurrencyUser(HttpUser):
    """
    TEST 1: Concurrency - hundreds of students -> 10 slots, waitlist on

    Run: locust -f locust/locustfile.py --tags concurrency -u 200 -r 50 --run-time 30s

    After test, verify:
      SELECT confirmed_count, capacity FROM events WHERE id = X;
      SELECT COUNT(*) FROM event_registrations
       WHERE event_id = X AND registration_status = 'CONFIRMED';
    Both counts should be <= 10 and equal to each other.
    """
    wait_time = between(0, 0.1)

    def on_start(self):
        if not STUDENT_IDS:
            self.headers = {}
            return
        self.headers = student_headers(random.choice(STUDENT_IDS))

        if not CONCURRENCY_EVENT_ID:
            resp = self.client.post(
                "/api/v1/events",
                json={
                    "title": "Last Slot Storm",
                    "event_type": "FREE",
                    "start_date": future_date(30),
                    "status": "ACTIVE",
                    "capacity": SLOTS,
                    "waitlist_enabled": True,
                },
                headers=ADMIN_HEADERS,
            )
            if resp.status_code == 201:
                globals()["CONCURRENCY_EVENT_ID"] = resp.json()["id"]
                print(f"\nCreated event {CONCURRENCY_EVENT_ID} with {SLOTS} slots\n")

    @tag("concurrency")
    @task(5)
    def register_for_last_slots(self):
        """All users fight for the same 10 slots."""
        if not CONCURRENCY_EVENT_ID or not self.headers:
            return

        with self.client.post(
            "/api/v1/registrations",
            json={"event_id": CONCURRENCY_EVENT_ID},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            if resp.status_code == 201:
                resp.success()
            elif resp.status_code == 409:
                resp.success()  # Expected: already registered
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @tag("concurrency")
    @task(1)
    def cancel_own_registration(self):
        """Cancellations free slots and trigger waitlist promotion."""
        if not CONCURRENCY_EVENT_ID or not self.headers:
            return

        resp = self.client.get(
            f"/api/v1/registrations?event_id={CONCURRENCY_EVENT_ID}",
            headers=self.headers,
            name="/api/v1/registrations?event_id=[id]",
        )
        if resp.status_code != 200:
            return
        live = [r for r in resp.json() if r["registration_status"] != "CANCELLED"]
        if not live:
            return

        with self.client.post(
            f"/api/v1/registrations/{live[0]['id']}/cancel",
            headers=self.headers,
            name="/api/v1/registrations/[id]/cancel",
            catch_response=True,
        ) as cancel:
            if cancel.status_code in (200, 409):
                cancel.success()  # 409: a concurrent cancel won
            else:
                cancel.failure(f"Unexpected: {cancel.status_code}")


class ReadUser(HttpUser):
    """
    TEST 2: Reads under write load

    Run: locust -f locust/locustfile.py --tags read -u 100 -r 20 --run-time 60s

    Compare avg / P95 latency with and without ConcurrencyUser running.
    """
    wait_time = between(0.1, 0.5)

    @tag("read")
    @task(10)
    def get_event_detail(self):
        event_id = CONCURRENCY_EVENT_ID or (random.choice(EVENT_IDS) if EVENT_IDS else None)
        if event_id:
            self.client.get(f"/api/v1/events/{event_id}", name="/api/v1/events/{id}")

    @tag("read")
    @task(3)
    def refund_quote(self):
        if CONCURRENCY_EVENT_ID:
            self.client.get(
                f"/api/v1/events/{CONCURRENCY_EVENT_ID}/refund-quote",
                name="/api/v1/events/{id}/refund-quote",
            )

    @tag("read")
    @task(1)
    def health_check(self):
        """Monitor system health."""
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 3: Edge cases - Bad input handling

    Run: locust -f locust/locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """
    wait_time = between(0.5, 1.5)

    def on_start(self):
        self.headers = student_headers(random.choice(STUDENT_IDS)) if STUDENT_IDS else {}

    def _expect(self, resp, codes):
        if resp.status_code in codes:
            resp.success()
        else:
            resp.failure(f"Expected {codes}, got {resp.status_code}")

    @tag("edge")
    @task
    def invalid_event_id(self):
        """Register for a non-existent event."""
        with self.client.post(
            "/api/v1/registrations",
            json={"event_id": 999999},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, (404,))

    @tag("edge")
    @task
    def cancel_unknown_registration(self):
        with self.client.post(
            "/api/v1/registrations/999999/cancel",
            headers=self.headers,
            name="/api/v1/registrations/[id]/cancel",
            catch_response=True,
        ) as resp:
            self._expect(resp, (404,))

    @tag("edge")
    @task
    def zero_capacity_event(self):
        """Events need at least one slot."""
        with self.client.post(
            "/api/v1/events",
            json={"title": "Nope", "start_date": future_date(5), "capacity": 0},
            headers=ADMIN_HEADERS,
            catch_response=True,
        ) as resp:
            self._expect(resp, (422,))

    @tag("edge")
    @task
    def student_bulk_upload(self):
        """Students cannot bulk register."""
        if not CONCURRENCY_EVENT_ID:
            return
        with self.client.post(
            f"/api/v1/events/{CONCURRENCY_EVENT_ID}/bulk-register",
            json={"candidates": ["LOAD-X"]},
            headers=self.headers,
            name="/api/v1/events/{id}/bulk-register",
            catch_response=True,
        ) as resp:
            self._expect(resp, (403,))

    @tag("edge")
    @task
    def malformed_json(self):
        """Send garbage data."""
        with self.client.post(
            "/api/v1/registrations",
            data="not json at all",
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, (400, 422))

    @tag("edge")
    @task
    def missing_auth(self):
        """Try registering without auth."""
        with self.client.post(
            "/api/v1/registrations",
            json={"event_id": 1},
            catch_response=True,
        ) as resp:
            self._expect(resp, (401,))


class RealisticUser(HttpUser):
    """
    TEST 4: Realistic mixed workload

    Run: locust -f locust/locustfile.py -u 200 -r 20 --run-time 120s

    Simulates real traffic:
      - Mostly viewing events
      - Some registrations and cancellations
      - Rare event creation by the admin
    """
    wait_time = between(1, 3)

    def on_start(self):
        self.headers = student_headers(random.choice(STUDENT_IDS)) if STUDENT_IDS else {}

    @task(50)
    def view_event(self):
        if EVENT_IDS:
            self.client.get(f"/api/v1/events/{random.choice(EVENT_IDS)}", name="/api/v1/events/{id}")

    @task(10)
    def register(self):
        if EVENT_IDS and self.headers:
            self.client.post(
                "/api/v1/registrations",
                json={"event_id": random.choice(EVENT_IDS)},
                headers=self.headers,
            )

    @task(5)
    def my_registrations(self):
        if self.headers:
            self.client.get("/api/v1/registrations", headers=self.headers)

    @task(3)
    def create_event(self):
        resp = self.client.post(
            "/api/v1/events",
            json={
                "title": f"Event {random.randint(1, 10000)}",
                "start_date": future_date(random.randint(1, 90)),
                "status": "ACTIVE",
                "capacity": random.randint(10, 500),
                "waitlist_enabled": random.random() < 0.5,
            },
            headers=ADMIN_HEADERS,
        )
        if resp.status_code == 201:
            EVENT_IDS.append(resp.json()["id"])
