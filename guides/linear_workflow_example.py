"""Run a tool-only workflow with local tools and an in-memory store."""

import asyncio

from waypoint import LocalToolService, NodeServices, WorkflowCatalog, WorkflowEngine
from waypoint.config import WaypointConfig
from waypoint.events import InMemoryEventBus
from waypoint.persistence import InMemoryExecutionRepository

tools = LocalToolService()


@tools.register("word_count", description="Count the words in a text")
def word_count(text: str) -> dict:
    return {"words": len(text.split())}


@tools.register("shout", description="Upper-case a text")
async def shout(text: str) -> str:
    await asyncio.sleep(0.1)
    return text.upper()


WORKFLOW = {
    "id": "text_stats",
    "name": "Text statistics",
    "nodes": [
        {
            "id": "start",
            "type": "start",
            "config": {"inputs": [{"name": "text", "required": True, "type": "string"}]},
        },
        {
            "id": "count",
            "type": "tool",
            "config": {
                "tool_id": "word_count",
                "parameters": {"text": "{{text}}"},
                "output_variable": "stats",
            },
        },
        {
            "id": "long_enough",
            "type": "decision",
            "config": {"expression": "stats.words >= 3"},
        },
        {
            "id": "loud",
            "type": "tool",
            "config": {"tool_id": "shout", "parameters": {"text": "{{text}}"}, "output_variable": "result"},
        },
        {"id": "end", "type": "end", "config": {"exclude_fields": ["text"]}},
    ],
    "edges": [
        {"source": "start", "target": "count"},
        {"source": "count", "target": "long_enough"},
        {"source": "long_enough", "target": "loud", "branch": "true"},
        {"source": "long_enough", "target": "end", "branch": "false"},
        {"source": "loud", "target": "end"},
    ],
}


async def main():
    catalog = WorkflowCatalog()
    catalog.register(WORKFLOW)
    engine = WorkflowEngine(
        catalog,
        InMemoryExecutionRepository(),
        event_bus=InMemoryEventBus(),
        services=NodeServices(tools=tools),
        config=WaypointConfig(),
    )
    await engine.start()

    execution_id = await engine.create_execution(
        "text_stats", {"text": "waypoints keep workflows honest"}, owner_id="guide"
    )
    async for event in engine.stream_events(execution_id):
        print(f"{event.sequence:>3} {event.type.value:<16} {event.node_id or ''}")

    state = await engine.get_execution(execution_id)
    print(f"Status: {state.status.value}")
    print(f"Output: {state.final_output}")
    await engine.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
