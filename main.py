import argparse
import asyncio
import logging
import os
import tempfile
import time
from typing import Optional

from cryptography.fernet import Fernet

from immutable_aggregates import (
    AggregateMeta,
    AggregateRepository,
    AggregateRoot,
    EntryDeletedError,
    ModelEvent,
    sqlite_backend_factory,
)


class UserModel(AggregateRoot):
    email: str

    @classmethod
    def apply_event(cls, event: ModelEvent, aggregate: Optional["UserModel"] = None) -> "UserModel":
        if event.name == "UserCreatedEvent":
            return cls(
                email=event.data["email"],
                meta=AggregateMeta(id=event.aggregate_id, version=1, created_at=event.created_at),
            )
        if event.name == "UserDeletedEvent":
            return cls(email=aggregate.email, meta=aggregate.meta.deleted(event.created_at))
        return super().apply_event(event, aggregate)


async def benchmark(num_users: int, encrypted: bool):
    print(f"Benchmarking with {num_users} users (encrypted: {encrypted})...")

    async def run_mode(db_path: str):
        key = Fernet.generate_key() if encrypted else None
        async with sqlite_backend_factory(db_path, key=key) as backend:
            users = AggregateRepository(UserModel, "user", backend)

            # --- Add benchmark ---
            start_add = time.perf_counter()
            events = await asyncio.gather(
                *(users.add({"email": f"user{i}@example.invalid"}, "benchmark") for i in range(num_users))
            )
            add_time = time.perf_counter() - start_add

            # Soft-delete every tenth user so reads have to filter.
            removed = events[::10]
            for event in removed:
                await users.remove(await users.get_by_id(event.aggregate_id))

            try:
                await users.get_by_id(removed[0].aggregate_id)
            except EntryDeletedError as e:
                print(f"  {e} Last known email: {e.entry.email}")

            # --- Read benchmark ---
            start_read = time.perf_counter()
            live_users = await users.find_all()
            read_time = time.perf_counter() - start_read

            assert len(live_users) == num_users - len(removed)

        return add_time, read_time

    mem_add_time, mem_read_time = await run_mode(":memory:")

    with tempfile.TemporaryDirectory() as tmpdir:
        file_add_time, file_read_time = await run_mode(os.path.join(tmpdir, "bench.db"))

    print(f"\n--- Results for {num_users} users ---")
    print(f"In-memory SQLite  - Add: {mem_add_time:.4f}s ({num_users / mem_add_time:,.0f} adds/s), find_all: {mem_read_time:.4f}s")
    print(f"File-based SQLite - Add: {file_add_time:.4f}s ({num_users / file_add_time:,.0f} adds/s), find_all: {file_read_time:.4f}s")


async def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--num-users", type=int, default=1000)
    parser.add_argument("--encrypted", action="store_true")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(message)s")
    await benchmark(args.num_users, args.encrypted)


if __name__ == "__main__":
    asyncio.run(main())
