import random

from locust import HttpUser, task, between

BATCH_IDS = [f"BATCH-{n:03d}" for n in range(1, 51)]


class VerifierUser(HttpUser):
    wait_time = between(1, 3)

    def on_start(self):
        self.headers = {"X-Party-Address": f"0xload{random.randint(0, 9999):04d}"}

    @task(5)
    def verify_batch(self):
        batch_id = random.choice(BATCH_IDS)
        self.client.post(f"/api/verify/{batch_id}", headers=self.headers, name="/api/verify/[id]")

    @task(2)
    def list_batches(self):
        self.client.get("/api/batches", params={"limit": 20})

    @task(1)
    def verification_history(self):
        batch_id = random.choice(BATCH_IDS)
        self.client.get(f"/api/verify/{batch_id}/history", name="/api/verify/[id]/history")
