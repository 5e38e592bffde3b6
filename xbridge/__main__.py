import sys

import yaml

from xbridge.xbridge_errors import BridgeError
from xbridge.xbridge_printer import Printer
from xbridge.xbridge_runtime import Bridge

USAGE = "usage: python -m xbridge LOCATOR FUNCTION [ARG ...]\n       python -m xbridge LOCATOR --describe [NAME]"


def _parse_arg(raw: str):
    """Each argument is a YAML scalar or flow collection; unparsable text stays a string."""
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def run(argv, bridge=None) -> int:
    """Load a module, call one function and print the outcome. Returns the exit status."""
    if len(argv) < 2:
        print(USAGE, file=sys.stderr)
        return 2
    bridge = bridge or Bridge()
    printer = Printer()
    locator, name, rest = argv[0], argv[1], argv[2:]
    try:
        bridge.load_module(locator)
    except BridgeError as e:
        print(f"{e.kind}: {e.message}", file=sys.stderr)
        return 1

    if name == "--describe":
        targets = rest or (bridge.functions_registry.names() + bridge.classes_registry.names())
        for target in targets:
            try:
                print(bridge.describe(target))
            except BridgeError as e:
                print(f"{e.kind}: {e.message}", file=sys.stderr)
                return 1
        return 0

    result = bridge.invoke(name, *[_parse_arg(a) for a in rest])
    # Print side effects (from `emit`)
    for effect in result.side_effects:
        if effect.get('topics') == ['progress']:
            print(effect.get('message', ''))
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        return 1
    if not result.value.is_undefined:
        print(printer.pformat(result.value))
    return 0


def main():
    raise SystemExit(run(sys.argv[1:]))


if __name__ == "__main__":
    main()
