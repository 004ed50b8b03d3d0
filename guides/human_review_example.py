"""Pause at a human checkpoint, answer it, and resume.

Needs an API key for the configured model, e.g. ``OPENAI_API_KEY`` for
the default ``openai:gpt-4o-mini``. Set ``WAYPOINT_DATABASE_URL`` to a
``sqlite://`` URL to keep the execution across process restarts.
"""

import asyncio
from pathlib import Path

from waypoint import NodeServices, WorkflowCatalog, WorkflowEngine, get_repository, load_config
from waypoint.events import get_event_bus
from waypoint.integration import PydanticAIChatService

WORKFLOWS = Path(__file__).parent / "workflows"


async def main():
    config = load_config()
    catalog = WorkflowCatalog()
    catalog.load_directory(WORKFLOWS)

    engine = WorkflowEngine(
        catalog,
        get_repository(config=config),
        event_bus=get_event_bus(config=config),
        services=NodeServices(llm=PydanticAIChatService(config.engine.platform_model_id)),
        config=config,
    )
    recovered = await engine.start()
    if recovered:
        print(f"Marked {len(recovered)} interrupted execution(s) as failed")

    execution_id = await engine.create_execution(
        "content_review", {"topic": "the new pricing page"}, owner_id="guide"
    )
    state = await engine.wait(execution_id)

    while state.status.value == "paused":
        checkpoint = state.pending_checkpoint
        print(checkpoint.message)
        print(f"Shown data: {checkpoint.display_data}")
        options = [option.value for option in checkpoint.options]
        answer = input(f"Answer ({'/'.join(options)}): ").strip() or options[0]
        note = input("Note (optional): ").strip()
        await engine.respond(execution_id, checkpoint.id, answer, {"note": note} if note else {})
        state = await engine.wait(execution_id)

    print(f"Finished with status {state.status.value}")
    print(state.final_output or state.error)
    await engine.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
