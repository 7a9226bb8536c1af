"""Run the AccelStream server with `python -m accelstream`."""

from accelstream.main import main

main()
