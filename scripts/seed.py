#!/usr/bin/env python3
"""Seed a demo organization with workflows and backdated task history."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from flowtrack.config import settings
from flowtrack.db.base import Database
from flowtrack.engine import FlowTrackEngine
from flowtrack.search.client import SearchIndexClient
from flowtrack.search.synchronizer import IndexSynchronizer
from flowtrack.utils.time import utc_now

logger = logging.getLogger("flowtrack.seed")


def _env(name: str, default: str | None = None) -> str | None:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value


class ScriptedClock:
    """Event clock that reads whatever instant the script last set."""

    def __init__(self) -> None:
        self.now = utc_now()
        self._current = self.now

    def hours_ago(self, hours: float) -> "ScriptedClock":
        self._current = self.now - timedelta(hours=hours)
        return self

    def __call__(self) -> datetime:
        return self._current


SOFTWARE_STAGES = ["Backlog", "In Progress", "Code Review", "Testing", "Done"]
CONTENT_STAGES = ["Ideas", "Writing", "Editing", "Published"]

# (title, description, creator, [(hours_ago, stage or None for completion)])
SOFTWARE_TASKS = [
    (
        "Build authentication system",
        "Implement token-based authentication",
        "admin",
        [(72, "Backlog"), (48, "In Progress"), (24, "Code Review"), (6, "Testing")],
    ),
    (
        "Create dashboard UI",
        "Design and implement the main dashboard",
        "member",
        [(48, "Backlog"), (24, "In Progress")],
    ),
    (
        "Setup database indexes",
        "Optimize database queries",
        "admin",
        [(96, "Backlog"), (72, "In Progress"), (48, "Code Review"), (24, "Done"), (12, None)],
    ),
]

CONTENT_TASKS = [
    (
        "Write launch announcement",
        "Blog post for the public launch",
        "member",
        [(120, "Ideas"), (100, "Writing"), (40, "Editing"), (30, "Published"), (30, None)],
    ),
]


async def _seed_workflow(
    engine: FlowTrackEngine,
    clock: ScriptedClock,
    organization_id: UUID,
    users: dict[str, UUID],
    name: str,
    description: str,
    stages: list[str],
    tasks: list,
) -> None:
    workflow = await engine.create_workflow(
        organization_id, name, stages, users["admin"], description=description
    )
    logger.info(f"Created workflow: {workflow.name}")

    for title, task_description, creator, steps in tasks:
        user_id = users[creator]
        (created_hours, initial_stage), *transitions = steps

        clock.hours_ago(created_hours)
        task = await engine.create_task(
            organization_id,
            workflow.workflow_id,
            title,
            user_id,
            description=task_description,
            initial_stage=initial_stage,
        )

        for hours, stage in transitions:
            clock.hours_ago(hours)
            if stage is None:
                await engine.complete_task(organization_id, task.task_id, user_id)
            else:
                await engine.change_stage(organization_id, task.task_id, stage, user_id)
        logger.info(f"Created task: {title}")


async def seed() -> None:
    organization_id = UUID(_env("FLOWTRACK_SEED_ORGANIZATION_ID") or str(uuid4()))
    users = {"admin": uuid4(), "member": uuid4()}
    clock = ScriptedClock()

    database = Database(settings.database_url)
    await database.init()
    index_client = SearchIndexClient.from_settings(settings)
    await index_client.start()
    synchronizer = IndexSynchronizer.from_settings(settings, index_client)
    await synchronizer.start()

    try:
        async with database.session() as session:
            engine = FlowTrackEngine(session, synchronizer, clock=clock)
            await _seed_workflow(
                engine, clock, organization_id, users,
                "Software Development", "Standard software development workflow",
                SOFTWARE_STAGES, SOFTWARE_TASKS,
            )
            await _seed_workflow(
                engine, clock, organization_id, users,
                "Content Creation", "Content pipeline workflow",
                CONTENT_STAGES, CONTENT_TASKS,
            )
    finally:
        await synchronizer.stop()
        await index_client.close()
        await database.close()

    print("Seed data created successfully!")
    print(f"  X-Organization-ID: {organization_id}")
    print(f"  X-User-ID (admin): {users['admin']}")
    print(f"  X-User-ID (member): {users['member']}")


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(name)s - %(levelname)s - %(message)s")
    asyncio.run(seed())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
