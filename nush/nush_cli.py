import json
import os
import sys

from nush.nush_context import SetupError
from nush.nush_runtime import evaluate


def host_env() -> dict:
    env = dict(os.environ)
    if sys.platform == "win32" and "PWD" not in env:
        env["PWD"] = os.getcwd()
    return env


def main(argv=None):
    """Run ``nush -c '<program>'`` once and print the result document."""
    argv = list(sys.argv if argv is None else argv)
    prog = os.path.basename(argv[0]) if argv else "nush"
    args = argv[1:]
    if "-c" not in args:
        print(f"Usage: {prog} -c 'command'", file=sys.stderr)
        sys.exit(1)
    i = args.index("-c")
    if i + 1 >= len(args):
        print("Error: '-c' flag without command.", file=sys.stderr)
        sys.exit(1)
    program = args[i + 1]

    try:
        # print output goes to stderr; stdout carries only the result document
        result = evaluate(program, host_env(), stdout=sys.stderr)
    except SetupError as e:
        print(f"Error: failed to set up the interpreter: {e}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(result.to_dict(), indent=2))
    sys.exit(result.exit_code)


if __name__ == "__main__":
    main()
