"""Plan/build mode tracking and the reminders injected on transitions."""

from pathlib import Path

from nimbus.logging import get_logger
from nimbus.models import ContentPart, MessageContent

log = get_logger(__name__)

PLAN_MODE = "plan"
BUILD_MODE = "build"


def plan_mode_reminder(plan_file_path: Path | str) -> str:
    return f"""<system-reminder>
You are in PLAN mode. Follow this workflow:

## Plan Workflow

### Phase 1: Initial Understanding
Goal: Understand the user's request by reading code and asking clarifying questions.

1. Explore the codebase to understand the relevant code and existing patterns.
2. After exploring, use the **question** tool to clarify ambiguities in the user's request.

### Phase 2: Design
Goal: Design an implementation approach based on your exploration and the user's answers.

1. Synthesize what you learned from exploration and user answers.
2. Consider trade-offs between approaches.
3. Use the **question** tool to clarify any remaining decisions with the user.

### Phase 3: Create Plan
Goal: Write a structured plan using the todowrite tool AND the plan file.

1. Create a clear, ordered todo list capturing each implementation step using todowrite.
2. Write a detailed plan to the plan file at: {plan_file_path}
   This is the ONLY file you are allowed to edit in plan mode.
3. The plan file should contain: summary, approach, file list, and implementation order.

### Phase 4: Call plan_exit
At the very end of your turn, once you are satisfied with your plan, call plan_exit to indicate you are done planning.

### Phase 5: Iteration
If the user asks for changes, update both the todo list and plan file, then call plan_exit again.

**Critical rule:** Your turn should ONLY end with either asking the user a question (via the question tool) or calling plan_exit.
</system-reminder>"""


def build_switch_reminder(plan_file_path: Path | str) -> str:
    return f"""<system-reminder>
Your operational mode has changed from plan to build.
You are no longer in read-only mode.
You are permitted to make file changes, run shell commands, and utilize your full arsenal of tools.

A plan file exists at: {plan_file_path}
You should execute on the plan defined within it and in the todo list.
Read the plan file first, then work through each task, updating status as you go.
</system-reminder>"""


def append_to_content(content: MessageContent, suffix: str) -> MessageContent:
    """Return ``content`` with ``suffix`` appended to its text; the input is not modified."""
    if isinstance(content, str):
        return f"{content}\n\n{suffix}"

    parts = [ContentPart(type=p.type, text=p.text, image_url=p.image_url) for p in content]
    for part in parts:
        if part.type == "text" and part.text is not None:
            part.text = f"{part.text}\n\n{suffix}"
            return parts
    parts.append(ContentPart(type="text", text=suffix))
    return parts


class ModeTransitionManager:
    """Remembers the previous turn's mode and adds one-time reminders."""

    def __init__(
        self,
        project_dir: Path | str,
        plans_dir: str = ".nimbus/plans",
        initial_mode: str = BUILD_MODE,
    ):
        self.project_dir = Path(project_dir)
        self.plans_dir = plans_dir
        self.previous_mode = initial_mode

    def plan_file_path(self, session_id: str) -> Path:
        return self.project_dir / self.plans_dir / f"{session_id}.md"

    def ensure_plan_file(self, session_id: str) -> Path:
        """Create the session's plan file with a stub header if missing."""
        path = self.plan_file_path(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        if not path.exists():
            path.write_text(
                f"# Plan\n\n_Session: {session_id}_\n\n<!-- Write your plan here -->\n",
                encoding="utf-8",
            )
            log.debug("Created plan file", path=str(path))
        return path

    def compose(
        self,
        content: MessageContent,
        effective_mode: str,
        session_id: str,
        mode_switch: bool = False,
    ) -> MessageContent:
        """Outgoing content for this turn, with at most one reminder appended."""
        if effective_mode == PLAN_MODE:
            content = append_to_content(content, plan_mode_reminder(self.ensure_plan_file(session_id)))
        elif mode_switch and self.previous_mode == PLAN_MODE:
            content = append_to_content(content, build_switch_reminder(self.plan_file_path(session_id)))
        self.previous_mode = effective_mode
        return content
