"""Test helpers for kpkg tools."""

import contextlib
import io

from kpkg.tool.kpkg import _make_parser

TESTDATA = "tests/testdata"
REPO = f"{TESTDATA}/repository"


async def run_command(args: list[str]) -> str:
    """Run a kpkg command and return what it printed."""
    parsed = _make_parser().parse_args(args)
    action = parsed.cls()
    output = io.StringIO()
    with contextlib.redirect_stdout(output):
        await action.run(**vars(parsed))
    return output.getvalue()
