# run.py
# Entry point. Config and wiring only — no logic lives here.
#
#   agent-runner explore ./my-export
#   agent-runner analyze ./my-export             # explore, then write analysis code
#   agent-runner explore ./my-export --resume session_...
#   agent-runner sessions
#
# The presentation persona needs a PresentationRenderer supplied by a host
# application, so it is not wired into the CLI.

import argparse
import json
import logging
import sys

from agent_runner import display
from agent_runner.agents import (
    Agent,
    create_code_writer_agent,
    create_exploration_agent,
    parse_insights_from_result,
)
from agent_runner.config import load_settings
from agent_runner.event_log import EventLogger
from agent_runner.models import AgentResult
from agent_runner.persistence import CheckpointStore, new_session_id
from agent_runner.transport import OpenRouterClient


def _execute(agent: Agent, store: CheckpointStore, session_id: str, logger: EventLogger, model: str) -> AgentResult:
    agent.on(display.render_event)
    agent.on(logger.listener(agent.name))
    display.banner(agent.name, model, agent.runner.config.max_iterations)
    if agent.resume_from is not None:
        display.resuming(agent.resume_from)

    try:
        result = agent.run()
    except KeyboardInterrupt:
        # Ctrl-C during a transport or tool call: the checkpoint from the last
        # boundary is already on disk.
        display.halt(f"Interrupted. Resume with --resume {session_id}")
        raise

    status = "complete" if result.success else "paused" if result.stopped else "error"
    store.save(
        session_id,
        agent.runner.checkpoint(),
        agent_name=agent.name,
        status=status,
        error=None if result.success else agent.runner.state.error,
    )
    if result.success:
        display.discovery_summary(result)
    else:
        display.final_result(result)
    return result


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="agent-runner")
    parser.add_argument("--model", help="Override AGENT_MODEL.")
    parser.add_argument("--verbose", action="store_true", help="Show library debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    for name in ("explore", "analyze"):
        cmd = sub.add_parser(name)
        cmd.add_argument("root", help="Directory holding the exported data.")
        cmd.add_argument("--resume", metavar="SESSION_ID", help="Resume the exploration checkpoint.")
        cmd.add_argument("--max-iterations", type=int, default=None)
    sub.add_parser("sessions")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    settings = load_settings(model=args.model)
    store = CheckpointStore(settings.checkpoint_dir)

    if args.command == "sessions":
        for summary in store.list_sessions():
            print(json.dumps(summary.model_dump(mode="json")))
        return 0

    resume_from = None
    if args.resume:
        saved = store.load(args.resume)
        if saved is None:
            display.halt(f"No checkpoint found for session {args.resume}.")
            return 1
        if saved.status == "complete":
            display.halt(f"Session {args.resume} already completed; start a new run instead.")
            return 1
        resume_from = saved.to_checkpoint_data()

    if not settings.api_key:
        display.halt("OPENROUTER_API_KEY is not set. Add it to the environment or a .env file.")
        return 1

    client = OpenRouterClient(settings=settings)
    session_id = args.resume or new_session_id()
    logger = EventLogger(settings.log_dir, session_id)

    budget = {"max_iterations": args.max_iterations} if args.max_iterations else {}
    try:
        explorer = create_exploration_agent(
            args.root,
            client,
            on_checkpoint=store.callback(session_id, "ExplorationAgent"),
            resume_from=resume_from,
            **budget,
        )
        result = _execute(explorer, store, session_id, logger, settings.model)
        if not result.success or args.command == "explore":
            return 0 if result.success else 1

        writer_session = f"{session_id}_code"
        writer = create_code_writer_agent(
            args.root,
            client,
            result.discoveries,
            on_checkpoint=store.callback(writer_session, "CodeWriterAgent"),
            rate_limiter=explorer.runner.rate_limiter,
        )
        written = _execute(writer, store, writer_session, logger, settings.model)
        insights = parse_insights_from_result(written)
        print(json.dumps(insights, indent=2, default=str))
        return 0 if written.success else 1
    finally:
        logger.close()


if __name__ == "__main__":
    sys.exit(main())
