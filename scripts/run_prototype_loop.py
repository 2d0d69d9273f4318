#!/usr/bin/env python3
"""
Smoke test for the self-correcting prototype loop against the real model.

Runs one user turn through PrototypeAgent with the Anthropic gateway and
the local sandbox executor (esbuild compile check), printing every event
until the loop settles.

Requires ANTHROPIC_API_KEY (in env or .env) and Node.js for npx esbuild.

Run:
    python scripts/run_prototype_loop.py "Build an interactive demo of gradient descent on a 2D bowl"
"""

import asyncio
import json
import os
import sys

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "backend"))

from sciproto.agent import LoopStatus, PrototypeAgent
from sciproto.local_sandbox_executor import LocalSandboxExecutor

DEFAULT_PROMPT = "Build an interactive demo of k-means clustering with a slider for k."


def print_event(event: dict):
    kind = event["type"]
    if kind == "text":
        print(event["content"], end="", flush=True)
    elif kind == "render_prototype":
        print(f"\n--- render v{event['version']} ({len(event['code'])} chars) ---")
    elif kind == "status":
        print(f"\n[status] {event['status']} ({event['display_status']})")
    elif kind == "message":
        pass
    else:
        print(f"\n[{kind}] {json.dumps({k: v for k, v in event.items() if k != 'type'})[:300]}")


async def main(prompt: str):
    sandbox = LocalSandboxExecutor(session_id="smoke-test")
    agent = PrototypeAgent(session_id="smoke-test", sandbox=sandbox, on_event=print_event)

    try:
        await agent.submit_turn(prompt)

        # Wait for renders and repair turns to settle
        while agent.status != LoopStatus.IDLE or agent._fix_task is not None:
            await asyncio.sleep(0.5)

        print("\n")
        print(f"Final version: {agent.artifact.version}")
        print(f"Repair attempts: {agent.retry.attempt_count}")
        print(f"Max retries reached: {agent.max_retries_reached}")
        print(f"Last error: {agent.last_error}")
    finally:
        await agent.cleanup()


if __name__ == "__main__":
    asyncio.run(main(" ".join(sys.argv[1:]) or DEFAULT_PROMPT))
