# src/agenda_planner/cli.py
"""
Agenda Planner CLI.

Operational commands against the configured goal store:
- init: create the schema
- stack / show / journal: inspect a session's goals and audit trail
- evaluate / seed: run the planner by hand
- prompt: print the rendered agenda block

Available as the ``agenda-planner`` console script.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import AgendaConfig, load_config
from .exceptions import AgendaPlannerError, GoalNotFoundError
from .logging_config import configure_logging, log_display
from .models import AgendaContext, ClassifierGoal, Goal, JournalEntry, MessageComplexity, PulseState
from .planner import AgendaPlanner

logger = logging.getLogger(__name__)


# =============================================================================
# OUTPUT FORMATTING
# =============================================================================

class OutputFormatter:
    """Formats CLI output in various styles."""

    def __init__(self, use_color: bool = True, json_output: bool = False):
        self.use_color = use_color and sys.stdout.isatty()
        self.json_output = json_output

    def _color(self, text: str, color: str) -> str:
        """Apply ANSI color to text."""
        if not self.use_color:
            return text

        colors = {
            'green': '\033[92m',
            'red': '\033[91m',
            'blue': '\033[94m',
            'cyan': '\033[96m',
            'bold': '\033[1m',
            'reset': '\033[0m'
        }
        return f"{colors.get(color, '')}{text}{colors['reset']}"

    def success(self, text: str) -> str:
        return self._color(f"✓ {text}", 'green')

    def error(self, text: str) -> str:
        return self._color(f"✗ {text}", 'red')

    def info(self, text: str) -> str:
        return self._color(f"ℹ {text}", 'blue')

    def header(self, text: str) -> str:
        return self._color(text, 'bold')

    def goal(self, goal: Goal) -> str:
        parent = f" (parent {goal.parent_goal_id})" if goal.parent_goal_id else ""
        tag = self._color(f"[{goal.goal_type.value}|P{goal.priority}]", 'cyan')
        return f"#{goal.id} {tag} {goal.status.value}{parent}: {goal.goal_text}"

    def journal_entry(self, entry: JournalEntry) -> str:
        target = f"goal {entry.goal_id}" if entry.goal_id is not None else "session"
        return (
            f"{entry.created_at.isoformat()} {entry.event_type.value:<9} {target} "
            f"{json.dumps(entry.payload, sort_keys=True, default=str)}"
        )

    def emit(self, payload: Any) -> None:
        print(json.dumps(payload, indent=2, default=str))


def _dump_goals(goals: List[Goal]) -> List[Dict[str, Any]]:
    return [goal.model_dump(mode="json") for goal in goals]


# =============================================================================
# CLI COMMANDS
# =============================================================================

async def cmd_init(planner: AgendaPlanner, parsed: argparse.Namespace, formatter: OutputFormatter) -> int:
    backend = planner.store.backend_name
    if formatter.json_output:
        formatter.emit({"backend": backend, "initialized": True})
    else:
        print(formatter.success(f"Initialized {backend} goal store"))
    log_display(logger, logging.INFO, "Schema ready on %s backend", backend)
    return 0


async def cmd_stack(planner: AgendaPlanner, parsed: argparse.Namespace, formatter: OutputFormatter) -> int:
    goals = await planner.get_stack(parsed.user_id, parsed.session_id, limit=parsed.limit)
    if formatter.json_output:
        formatter.emit(_dump_goals(goals))
        return 0

    print(formatter.header(f"Agenda for {parsed.user_id}/{parsed.session_id}"))
    if not goals:
        print(formatter.info("No active goals"))
    for goal in goals:
        print(f"  {formatter.goal(goal)}")
        if goal.next_action:
            print(f"      next: {goal.next_action}")
    return 0


async def cmd_show(planner: AgendaPlanner, parsed: argparse.Namespace, formatter: OutputFormatter) -> int:
    goal = await planner.store.get_goal(parsed.goal_id)
    if goal is None:
        raise GoalNotFoundError(parsed.goal_id)
    if formatter.json_output:
        formatter.emit(goal.model_dump(mode="json"))
    else:
        print(formatter.goal(goal))
        for key, value in goal.model_dump(mode="json", exclude={"goal_text"}).items():
            print(f"  {key}: {value}")
    return 0


async def cmd_journal(planner: AgendaPlanner, parsed: argparse.Namespace, formatter: OutputFormatter) -> int:
    entries = await planner.store.list_journal(parsed.user_id, parsed.session_id, limit=parsed.limit)
    if formatter.json_output:
        formatter.emit([entry.model_dump(mode="json") for entry in entries])
        return 0

    print(formatter.header(f"Journal for {parsed.user_id}/{parsed.session_id}"))
    if not entries:
        print(formatter.info("No journal entries"))
    for entry in entries:
        print(f"  {formatter.journal_entry(entry)}")
    return 0


async def cmd_evaluate(planner: AgendaPlanner, parsed: argparse.Namespace, formatter: OutputFormatter) -> int:
    context = AgendaContext(
        user_id=parsed.user_id,
        session_id=parsed.session_id,
        message=parsed.message,
        display_name=parsed.display_name,
        home_location=parsed.home_location,
        pulse_state=parsed.pulse,
        classifier_goal=parsed.classifier_goal,
        message_complexity=parsed.complexity,
        active_tool_name=parsed.tool,
        has_tool_result=parsed.tool_result,
    )
    result = await planner.evaluate(context)
    if formatter.json_output:
        formatter.emit(result.model_dump(mode="json"))
        return 0

    print(formatter.header("Actions"))
    if not result.actions:
        print(formatter.info("No actions"))
    for action in result.actions:
        print(f"  - {action}")
    print(formatter.header("Stack"))
    for goal in result.stack:
        print(f"  {formatter.goal(goal)}")
    return 0


async def cmd_seed(planner: AgendaPlanner, parsed: argparse.Namespace, formatter: OutputFormatter) -> int:
    goals = await planner.seed_onboarding(parsed.user_id, parsed.session_id)
    if formatter.json_output:
        formatter.emit(_dump_goals(goals))
    else:
        print(formatter.success(f"Seeded onboarding for {parsed.user_id}/{parsed.session_id}"))
        for goal in goals:
            print(f"  {formatter.goal(goal)}")
    return 0


async def cmd_prompt(planner: AgendaPlanner, parsed: argparse.Namespace, formatter: OutputFormatter) -> int:
    block = await planner.format_stack(parsed.user_id, parsed.session_id)
    if formatter.json_output:
        formatter.emit({"prompt": block})
    elif block:
        print(block)
    else:
        print(formatter.info("No active goals"))
    return 0


COMMANDS: Dict[str, Callable[[AgendaPlanner, argparse.Namespace, OutputFormatter], Awaitable[int]]] = {
    "init": cmd_init,
    "stack": cmd_stack,
    "show": cmd_show,
    "journal": cmd_journal,
    "evaluate": cmd_evaluate,
    "seed": cmd_seed,
    "prompt": cmd_prompt,
}


async def _run(parsed: argparse.Namespace, config: AgendaConfig, formatter: OutputFormatter) -> int:
    planner = await AgendaPlanner.from_config(config)
    if planner.store.backend_name == "memory":
        log_display(
            logger,
            logging.WARNING,
            "Using the memory backend; goals are discarded when this command exits. "
            "Set [agenda_planner.storage] backend to sqlite or postgres to keep them.",
        )
    try:
        return await COMMANDS[parsed.command](planner, parsed, formatter)
    finally:
        await planner.close()


# =============================================================================
# MAIN CLI ENTRY POINT
# =============================================================================

def _add_session_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("user_id", help="User identifier")
    parser.add_argument("session_id", help="Conversation/session identifier")


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the agenda planner CLI."""
    parser = argparse.ArgumentParser(
        prog="agenda-planner",
        description="Conversation goal stack management CLI"
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
        default=None
    )
    parser.add_argument(
        "--json",
        help="Output in JSON format",
        action="store_true"
    )
    parser.add_argument(
        "--no-color",
        help="Disable colored output",
        action="store_true"
    )
    parser.add_argument(
        "--verbose", "-v",
        help="Show log output on the console",
        action="store_true"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init", help="Create the goal store schema")

    stack_parser = subparsers.add_parser("stack", help="Show the active goal stack")
    _add_session_args(stack_parser)
    stack_parser.add_argument("--limit", "-n", type=int, default=None, help="Number of goals")

    show_parser = subparsers.add_parser("show", help="Show one goal by id")
    show_parser.add_argument("goal_id", type=int, help="Goal id")

    journal_parser = subparsers.add_parser("journal", help="Show the goal journal")
    _add_session_args(journal_parser)
    journal_parser.add_argument("--limit", "-n", type=int, default=20, help="Most recent entries")

    evaluate_parser = subparsers.add_parser("evaluate", help="Evaluate one inbound message")
    _add_session_args(evaluate_parser)
    evaluate_parser.add_argument("message", help="Inbound message text")
    evaluate_parser.add_argument("--display-name", default=None)
    evaluate_parser.add_argument("--home-location", default=None)
    evaluate_parser.add_argument("--pulse", choices=[s.value for s in PulseState], default=None)
    evaluate_parser.add_argument(
        "--complexity", choices=[c.value for c in MessageComplexity], default=None
    )
    evaluate_parser.add_argument(
        "--classifier-goal", choices=[g.value for g in ClassifierGoal], default=None
    )
    evaluate_parser.add_argument("--tool", default=None, help="Active tool name")
    evaluate_parser.add_argument(
        "--tool-result", action="store_true", help="The active tool returned a result"
    )

    seed_parser = subparsers.add_parser("seed", help="Seed the onboarding goal")
    _add_session_args(seed_parser)

    prompt_parser = subparsers.add_parser("prompt", help="Print the agenda prompt block")
    _add_session_args(prompt_parser)

    return parser


def main(args: Optional[List[str]] = None) -> int:
    """
    Main entry point for the agenda planner CLI.

    Args:
        args: Command line arguments (defaults to sys.argv)

    Returns:
        Exit code
    """
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 0

    formatter = OutputFormatter(
        use_color=not parsed.no_color,
        json_output=parsed.json
    )

    try:
        config = load_config(parsed.config)
        log_config = dict(config.logging)
        if parsed.verbose:
            log_config.update(console_enabled=True, console_level="DEBUG")
        configure_logging(app_name="agenda-planner", config=log_config, force_reconfigure=True)
        return asyncio.run(_run(parsed, config, formatter))
    except AgendaPlannerError as e:
        print(formatter.error(str(e)), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
