"""
Generate a Mermaid diagram from the handshake transition table.

Usage:
    python scripts/generate_state_diagrams.py                   # print to stdout
    python scripts/generate_state_diagrams.py --update-design   # rewrite the section in DESIGN.md
    python scripts/generate_state_diagrams.py --check           # fail when DESIGN.md is out of date (CI)
"""
import argparse
import re
import sys
from pathlib import Path

# project root on the path so the app package imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.db.models.handshake_deal import HandshakeStatus, TERMINAL_STATUSES
from app.state_machine.states import HANDSHAKE_TRANSITIONS, HandshakeEvent, ParticipantRole

DESIGN_MD_PATH = Path(__file__).resolve().parent.parent / "DESIGN.md"
START_MARKER = "<!-- STATE_DIAGRAMS_START -->"
END_MARKER = "<!-- STATE_DIAGRAMS_END -->"

HANDSHAKE_LABELS: dict[str, str] = {
    HandshakeStatus.OPEN.value: "Offered",
    HandshakeStatus.PENDING_APPROVAL.value: "Requested, waiting for giver",
    HandshakeStatus.ACCEPTED.value: "Accepted",
    HandshakeStatus.GIVER_CONFIRMED.value: "Giver confirmed",
    HandshakeStatus.RECEIVER_CONFIRMED.value: "Receiver confirmed",
    HandshakeStatus.COMPLETED.value: "Completed, credits paid",
    HandshakeStatus.CANCELLED.value: "Cancelled",
}


def _edge_label(event: HandshakeEvent, roles: list[ParticipantRole]) -> str:
    return f"{event.value} ({', '.join(role.value for role in roles)})"


def generate_handshake_diagram(
    transitions: dict[tuple[HandshakeStatus, HandshakeEvent, ParticipantRole], HandshakeStatus] = HANDSHAKE_TRANSITIONS,
    labels: dict[str, str] = HANDSHAKE_LABELS,
) -> str:
    """
    Build a stateDiagram-v2 from the transition table.

    Transitions that differ only in the actor role are merged into one edge
    labelled with every role allowed to fire it.
    """
    lines: list[str] = ["stateDiagram-v2"]

    for status in HandshakeStatus:
        lines.append(f"    {status.value} : {labels.get(status.value, status.value)}")
    lines.append("")

    lines.append(f"    [*] --> {HandshakeStatus.OPEN.value}")
    lines.append("")

    edges: dict[tuple[HandshakeStatus, HandshakeStatus, HandshakeEvent], list[ParticipantRole]] = {}
    for (source, event, role), target in transitions.items():
        edges.setdefault((source, target, event), []).append(role)

    status_order = list(HandshakeStatus)
    for (source, target, event), roles in sorted(
        edges.items(),
        key=lambda item: (status_order.index(item[0][0]), status_order.index(item[0][1]), item[0][2].value),
    ):
        roles = sorted(roles, key=lambda role: list(ParticipantRole).index(role))
        lines.append(f"    {source.value} --> {target.value} : {_edge_label(event, roles)}")

    lines.append("")
    for status in status_order:
        if status in TERMINAL_STATUSES:
            lines.append(f"    {status.value} --> [*]")

    return "\n".join(lines)


def format_diagram_section(mermaid_code: str) -> str:
    return f"{START_MARKER}\n\n```mermaid\n{mermaid_code}\n```\n\n{END_MARKER}"


def update_design_md(section: str, path: Path = DESIGN_MD_PATH) -> None:
    """Replace the marked section, or append it when the markers are missing"""
    content = path.read_text(encoding="utf-8")
    if START_MARKER in content:
        pattern = re.compile(re.escape(START_MARKER) + r".*?" + re.escape(END_MARKER), re.DOTALL)
        content = pattern.sub(lambda _: section, content)
    else:
        content = content.rstrip("\n") + "\n\n## Handshake state diagram\n\n" + section + "\n"
    path.write_text(content, encoding="utf-8")
    print(f"Updated: {path}")


def check_design_md(section: str, path: Path = DESIGN_MD_PATH) -> bool:
    """True when the marked section in ``path`` matches the transition table"""
    content = path.read_text(encoding="utf-8")
    pattern = re.compile(re.escape(START_MARKER) + r".*?" + re.escape(END_MARKER), re.DOTALL)
    match = pattern.search(content)
    if not match:
        print(f"Error: no diagram markers in {path.name}")
        return False

    if match.group(0) == section:
        print("State diagram is in sync with the code")
        return True

    print(f"Error: the state diagram in {path.name} is out of date")
    print("Run: python scripts/generate_state_diagrams.py --update-design")
    return False


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a Mermaid diagram of the handshake state machine")
    parser.add_argument("--update-design", action="store_true", help="rewrite the diagram section in DESIGN.md")
    parser.add_argument("--check", action="store_true", help="exit non-zero when DESIGN.md is out of date")
    args = parser.parse_args()

    section = format_diagram_section(generate_handshake_diagram())

    if args.check:
        sys.exit(0 if check_design_md(section) else 1)
    elif args.update_design:
        update_design_md(section)
    else:
        print(section)


if __name__ == "__main__":
    main()
