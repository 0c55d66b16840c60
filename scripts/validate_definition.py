"""Script to validate a process definition file"""
import argparse
import json
import sys

from bpm_engine.domain.errors import DomainError
from bpm_engine.engine.registry import ProcessRegistry


def validate_definition(path: str) -> bool:
    with open(path, encoding="utf-8") as f:
        raw = json.load(f)

    registry = ProcessRegistry()
    try:
        machine = registry.register_definition(raw)
    except DomainError as e:
        print(f"❌ {e.message}")
        for error in e.details.get("errors", []):
            print(f"   • {error.get('path')}: {error.get('message')}")
        return False

    definition = machine.definition
    print(f"✅ {definition.name} ({definition.id} v{definition.version})")
    print(f"   Initial state: {definition.initial_state}")
    print(f"   States: {len(definition.states)}")
    print(f"   Terminal: {', '.join(machine.get_terminal_states()) or '-'}")

    print("\n" + "=" * 60)
    print("STATE GRAPH")
    print("=" * 60)
    for name, state in definition.states.items():
        marker = "🏁" if state.is_terminal else "•"
        print(f"\n{marker} {name}")
        if state.transitions:
            print(f"   → {', '.join(state.transitions)}")
        for entry in state.auto_transition:
            detail = {
                "timer": lambda e: f"after {e.duration}ms",
                "event": lambda e: f"on {e.event}",
                "condition": lambda e: f"{len(e.conditions)} condition(s)",
            }.get(entry.type, lambda e: "")(entry)
            print(f"   ⚡ {entry.type} → {entry.to_state} {detail}".rstrip())
        for action in state.required_actions:
            print(f"   👤 {action.type} ({action.role or 'any role'}): {action.message or ''}".rstrip())
        if state.guards:
            print(f"   🔒 Guards: {', '.join(state.guards)}")
    return True


def main():
    parser = argparse.ArgumentParser(description="Validate a process definition JSON file")
    parser.add_argument("path", help="Path to the definition JSON file")
    args = parser.parse_args()
    sys.exit(0 if validate_definition(args.path) else 1)


if __name__ == "__main__":
    main()
