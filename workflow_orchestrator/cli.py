"""Interactive CLI for the workflow orchestrator.

Runs the whole discovery → configuration → building → validation →
documentation pipeline in the terminal, no HTTP server required.

Usage:
    workflow-orchestrator-cli build "Send a Slack message when a webhook fires"
    workflow-orchestrator-cli build "requirement" --output workflow.json
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from argparse import ArgumentParser

MAX_RETRIES_PER_PHASE = 3


# ---------------------------------------------------------------------------
# Core interactive session runner
# ---------------------------------------------------------------------------


async def _run_session(prompt: str, output: str | None = None) -> int:
    """Build one workflow, prompting on stdin for clarifications. Returns an exit code."""
    from dotenv import load_dotenv
    load_dotenv()

    from workflow_orchestrator.errors import OrchestratorError

    orchestrator, provider, store = await create_orchestrator_from_env()

    try:
        status = await orchestrator.initialize(prompt)
        print(f"\nSession : {status.session_id}")
        print(f"Building: {prompt}\n")
        print("-" * 60)

        failures = 0
        while not status.complete:
            if status.pending_clarification:
                question = status.pending_clarification
                print(f"\n{'=' * 60}")
                print("CLARIFICATION NEEDED")
                print("=" * 60)
                print(f"\n{question['question']}")
                for suggestion in question.get("context", {}).get("suggestions") or []:
                    print(f"  - {suggestion}")
                answer = _prompt("Your answer: ")
                status = await orchestrator.submit_clarification(
                    status.session_id, question["questionId"], answer
                )
                continue

            phase = status.phase
            print(f"--- Running {phase} phase ---")
            status = await orchestrator.advance(status.session_id)

            if status.error:
                failures += 1
                print(f"    {phase} failed: {status.error['userMessage']}")
                if not status.error.get("retryable") or failures >= MAX_RETRIES_PER_PHASE:
                    print(f"\nStopping. Session ID for later reference: {status.session_id}")
                    return 1
                continue
            failures = 0

        workflow = await orchestrator.export_workflow(status.session_id)
        text = json.dumps(workflow, indent=2)
        if output:
            with open(output, "w", encoding="utf-8") as f:
                f.write(text)
            print(f"\nWorkflow written to {output} ({len(workflow['nodes'])} nodes)")
        else:
            print()
            print(text)
        return 0

    except OrchestratorError as e:
        print(f"\nError: {e.user_message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n\nInterrupted.")
        return 130
    finally:
        await orchestrator.close()
        await store.close()
        await provider.release()


def _prompt(label: str) -> str:
    """Read a line from stdin, stripping whitespace. Exits on EOF."""
    try:
        return input(label).strip()
    except EOFError:
        print("\n(EOF received, exiting)")
        sys.exit(0)


async def create_orchestrator_from_env():
    """Orchestrator, registry provider and store built from environment variables.

    Without SESSION_DB_PATH the sessions live in memory and end with the process.
    """
    from workflow_orchestrator.config import OrchestratorSettings
    from workflow_orchestrator.orchestrator import create_orchestrator, open_store
    from workflow_orchestrator.reasoning import ReasoningSettings, create_engine
    from workflow_orchestrator.registry import (
        NodeInfoService,
        RegistryClientProvider,
        RegistrySettings,
    )

    settings = OrchestratorSettings.from_env()
    provider = RegistryClientProvider(RegistrySettings.from_env())
    client = await provider.acquire()
    store = await open_store(settings)
    orchestrator = create_orchestrator(
        settings,
        create_engine(ReasoningSettings.from_env()),
        NodeInfoService(client),
        store,
        webhooks=False,
    )
    return orchestrator, provider, store


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        format="%(levelname)s: %(message)s",
    )

    parser = ArgumentParser(
        prog="workflow-orchestrator-cli",
        description="n8n workflow orchestrator, interactive terminal client",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    build_p = sub.add_parser("build", help="Build a new n8n workflow interactively")
    build_p.add_argument("prompt", help="Natural-language description of the workflow")
    build_p.add_argument(
        "--output",
        "-o",
        default=None,
        metavar="FILE",
        help="Write the exported workflow JSON here (default: stdout)",
    )

    args = parser.parse_args()

    if args.command == "build":
        sys.exit(asyncio.run(_run_session(args.prompt, args.output)))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
