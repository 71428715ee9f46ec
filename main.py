"""aiaday launcher. Runs the worker and a few queue and seeding commands."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from uuid import UUID

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

from aiaday.config import Settings, load_settings, validate_settings  # noqa: E402
from aiaday.errors import AiadayError  # noqa: E402
from aiaday.llm import OpenAIClient  # noqa: E402
from aiaday.models import (  # noqa: E402
    NewMessage,
    PingJob,
    ProcessMessageJob,
    RealWorldUser,
    SendMessageToSceneJob,
    ToPerson,
)
from aiaday.jobs import RandomSeed  # noqa: E402
from aiaday.store import PostgresStore  # noqa: E402
from aiaday.worker import Worker  # noqa: E402

logger = logging.getLogger("aiaday")


async def _open_store(settings: Settings) -> PostgresStore:
    if not settings.database_url:
        raise AiadayError("No database configured")
    return await PostgresStore.connect(settings.database_url, dimension=settings.embedding_dimension)


async def _run(args: argparse.Namespace, settings: Settings) -> None:
    store = await _open_store(settings)
    try:
        if args.command == "init-db":
            await store.ensure_schema()
            print("Schema is up to date.")

        elif args.command == "worker":
            llm = OpenAIClient(
                api_key=settings.require_api_key(),
                base_url=settings.llm_base_url,
                chat_model=settings.chat_model,
                embedding_model=settings.embedding_model,
                timeout=settings.llm_timeout,
            )
            worker = Worker(store=store, llm=llm, poll_interval=settings.poll_interval)
            if args.once:
                job = await worker.run_next_job()
                print("No job waiting." if job is None else f"Ran job {job.id} ({job.kind.name}).")
            else:
                await worker.run_forever()

        elif args.command == "ping":
            job_id = await store.unshift_job(PingJob())
            print(f"Queued ping job {job_id}.")

        elif args.command == "add-person":
            person_id = await store.create_person(args.name)
            if args.identity:
                await store.create_identity(args.name, args.identity)
            if args.state:
                await store.create_state_of_mind(args.name, args.state)
            print(f"Created person {args.name} ({person_id}).")

        elif args.command == "persons":
            for person in await store.list_persons():
                print(f"{person.name:<20}  {person.id}")

        elif args.command == "add-scene":
            scene_id = await store.create_scene(args.name, args.description)
            print(f"Created scene {args.name} ({scene_id}).")

        elif args.command == "join":
            participation_id = await store.add_person_to_scene(args.scene, args.person)
            print(f"{args.person} is in scene {args.scene} ({participation_id}).")

        elif args.command == "leave":
            await store.remove_person_from_scene(args.scene, args.person)
            print(f"{args.person} left scene {args.scene}.")

        elif args.command == "say":
            job_id = await store.unshift_job(SendMessageToSceneJob(
                sender=RealWorldUser(),
                scene_id=args.scene,
                content=args.content,
                random_seed=RandomSeed.new().value,
            ))
            print(f"Queued scene message job {job_id}.")

        elif args.command == "dm":
            person = await store.get_person_by_name(args.to)
            if person is None:
                raise AiadayError(f"No person named {args.to!r}")
            message_id = await store.send_message(NewMessage(
                sender=RealWorldUser(),
                recipient=ToPerson(person_id=person.id),
                content=args.content,
            ))
            job_id = await store.unshift_job(ProcessMessageJob(message_id=message_id))
            print(f"Sent message {message_id}, queued job {job_id}.")

        elif args.command == "jobs":
            for job in await store.list_jobs(args.limit):
                line = f"{job.created_at:%Y-%m-%d %H:%M:%S}  {job.status:<8}  {job.kind.name:<22}  {job.id}"
                if job.error:
                    line += f"\n    {job.error}"
                print(line)
    finally:
        await store.close()


def main():
    parser = argparse.ArgumentParser(description="aiaday person simulation")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create or update the database schema")

    p = sub.add_parser("worker", help="Run the job worker")
    p.add_argument("--once", action="store_true", help="Run a single job and exit")

    sub.add_parser("ping", help="Queue a ping job")

    p = sub.add_parser("add-person", help="Create a person")
    p.add_argument("name")
    p.add_argument("--identity", default="", help="Initial identity text")
    p.add_argument("--state", default="", help="Initial state of mind")

    sub.add_parser("persons", help="List persons")

    p = sub.add_parser("add-scene", help="Create a scene")
    p.add_argument("name")
    p.add_argument("--description", required=True)

    for name, help_text in (("join", "Put a person in a scene"), ("leave", "Take a person out of a scene")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--scene", type=UUID, required=True)
        p.add_argument("--person", required=True)

    p = sub.add_parser("say", help="Say something to a scene as the real-world user")
    p.add_argument("--scene", type=UUID, required=True)
    p.add_argument("--content", required=True)

    p = sub.add_parser("dm", help="Send a direct message as the real-world user")
    p.add_argument("--to", required=True, help="Person name")
    p.add_argument("--content", required=True)

    p = sub.add_parser("jobs", help="List recent jobs")
    p.add_argument("--limit", type=int, default=20)

    args = parser.parse_args()

    try:
        settings = load_settings()
    except AiadayError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for warning in validate_settings(settings):
        logger.warning(warning)

    try:
        asyncio.run(_run(args, settings))
    except KeyboardInterrupt:
        print("\nShutting down...")
    except AiadayError as e:
        logger.error("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
