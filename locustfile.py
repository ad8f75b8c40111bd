"""
Load Test for Re-Challenge CTF Platform read paths.

Each simulated participant registers a fresh account and then polls the
session status and leaderboard the way the frontend does during an event.

Run with:
    locust -f locustfile.py -u 500 -r 25 --host http://localhost:8000
"""

import random
import uuid

from locust import HttpUser, between, events, task

# ============== Configuration ==============

PASSWORD = "load-test-pass"

PERFORMANCE_THRESHOLDS = {
    "max_response_time_ms": 1000,
    "max_failure_rate": 0.05,
}


def accept(response, *ok_statuses: int) -> None:
    """Mark a response successful on an expected status; 429 counts as expected."""
    if response.status_code in ok_statuses or response.status_code == 429:
        response.success()
    else:
        response.failure(f"Unexpected status: {response.status_code}")


# ============== Participant ==============

class ParticipantUser(HttpUser):
    """
    Simulates a registered participant polling the challenge API.

    Behaviors:
    - Poll session status (most common)
    - View the leaderboard
    - Check whether a session can be started
    """

    wait_time = between(1, 5)

    def on_start(self):
        """Register a throwaway account and keep its bearer token."""
        suffix = uuid.uuid4().hex[:10]
        response = self.client.post(
            "/api/auth/register",
            json={
                "username": f"load_{suffix}",
                "email": f"load_{suffix}@example.com",
                "password": PASSWORD,
                "confirmPassword": PASSWORD,
            },
            name="POST /api/auth/register",
        )
        token = response.json().get("token") if response.status_code == 201 else None
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}

    @task(10)
    def get_status(self):
        with self.client.get(
            "/api/challenge/status",
            headers=self.headers,
            name="GET /api/challenge/status",
            catch_response=True,
        ) as response:
            accept(response, 200)

    @task(5)
    def get_leaderboard(self):
        limit = random.choice([10, 25, 50])
        with self.client.get(
            f"/api/challenge/leaderboard?limit={limit}",
            headers=self.headers,
            name="GET /api/challenge/leaderboard",
            catch_response=True,
        ) as response:
            accept(response, 200)

    @task(2)
    def can_start(self):
        with self.client.get(
            "/api/challenge/can-start",
            headers=self.headers,
            name="GET /api/challenge/can-start",
            catch_response=True,
        ) as response:
            accept(response, 200)

    @task(1)
    def get_info(self):
        with self.client.get(
            "/api/challenge/info",
            name="GET /api/challenge/info",
            catch_response=True,
        ) as response:
            accept(response, 200)


# ============== Health Check ==============

class HealthCheckUser(HttpUser):
    """Simulates health check requests to monitor API availability."""

    wait_time = between(10, 30)

    @task
    def health_check(self):
        with self.client.get("/health", name="GET /health", catch_response=True) as response:
            accept(response, 200)


# ============== Load Test Events ==============

@events.test_stop.add_listener
def on_test_stop(environment, **kwargs):
    """Print a summary and flag threshold breaches."""
    total = environment.stats.total
    print("\n=== Load Test Summary ===")
    print(f"Total requests: {total.num_requests}")
    print(f"Total failures: {total.num_failures}")
    print(f"Avg response time: {total.avg_response_time:.2f}ms")
    print(f"Requests per second: {total.total_rps:.2f}")

    if total.fail_ratio > PERFORMANCE_THRESHOLDS["max_failure_rate"]:
        print(f"WARNING: High failure rate ({total.fail_ratio:.2%})")
    if total.avg_response_time > PERFORMANCE_THRESHOLDS["max_response_time_ms"]:
        print(f"WARNING: High response time ({total.avg_response_time:.2f}ms)")
