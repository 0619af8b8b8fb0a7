"""
Load testing for the Feed Reader Public API using Locust.

Exercises admission control under load:
- Reads charged one global token
- The rate-limited public procedure
- Rate limit inspection endpoints

A 429 is an expected outcome here; only missing limit headers or
unexpected statuses count as failures.
"""

import random

from locust import HttpUser, TaskSet, task, between, events


def client_headers(client_ip: str):
    """Headers a fronting proxy would add for ``client_ip``."""
    return {"X-Forwarded-For": client_ip}


def random_public_ip() -> str:
    return f"93.184.{random.randint(0, 255)}.{random.randint(1, 254)}"


class PublicApiTasks(TaskSet):
    """Load tests for the Public API."""

    def on_start(self):
        """Every simulated user is one client address."""
        self.client_ip = random_public_ip()
        self.headers = client_headers(self.client_ip)

    def _check_admission(self, response):
        if response.status_code == 200:
            if "X-RateLimit-Remaining" in response.headers:
                response.success()
            else:
                response.failure("Missing rate limit headers")
        elif response.status_code == 429:
            if "Retry-After" in response.headers:
                response.success()
            else:
                response.failure("429 without Retry-After")
        else:
            response.failure(f"Unexpected status code: {response.status_code}")

    @task(5)
    def root(self):
        """A plain read, charged to the global bucket."""
        with self.client.get("/", headers=self.headers, catch_response=True) as response:
            self._check_admission(response)

    @task(3)
    def whoami(self):
        """The public procedure, charged to both buckets."""
        with self.client.get(
            "/api/v1/public/whoami",
            headers=self.headers,
            name="/api/v1/public/whoami",
            catch_response=True,
        ) as response:
            self._check_admission(response)

    @task(1)
    def rate_limit_status(self):
        """Inspect this client's public bucket."""
        with self.client.get(
            f"/api/v1/rate-limits/public/{self.client_ip}",
            headers=self.headers,
            name="/api/v1/rate-limits/[limiter]/[key]",
            catch_response=True,
        ) as response:
            if response.status_code in (200, 429):
                response.success()
            else:
                response.failure(f"Status lookup failed: {response.status_code}")


class BurstTasks(TaskSet):
    """A single hot client hammering the public procedure."""

    def on_start(self):
        self.headers = client_headers("93.184.216.34")

    @task
    def burst(self):
        with self.client.get(
            "/api/v1/public/whoami", headers=self.headers, catch_response=True
        ) as response:
            if response.status_code in (200, 429):
                response.success()
            else:
                response.failure(f"Unexpected status code: {response.status_code}")


class PublicApiUser(HttpUser):
    """Many clients with their own budgets."""
    tasks = [PublicApiTasks]
    wait_time = between(0.5, 2)
    host = "http://localhost:8000"


class BurstUser(HttpUser):
    """Clients sharing one address."""
    tasks = [BurstTasks]
    wait_time = between(0.05, 0.2)
    host = "http://localhost:8000"
    weight = 1


@events.request.add_listener
def on_request(request_type, name, response_time, response_length, exception, context, **kwargs):
    """Custom request event handler."""
    if exception:
        print(f"Request failed: {request_type} {name} - {exception}")
    elif response_time > 500:
        print(f"Slow request: {request_type} {name} - {response_time}ms")
