"""Run the kpkg command line tool."""

from kpkg.tool.kpkg import main

main()
