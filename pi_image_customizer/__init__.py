import os
from typing import Optional, Sequence

from .configuration import Configuration
from .lib import PipelineError, fail
from .operations import PhaseOrchestrator


def main(argv: Optional[Sequence[str]] = None) -> None:
	## Stage 0: Parse and validate arguments.  Nothing is touched before this succeeds.

	config = Configuration()
	try:
		config.parse_args(argv)
	except (PipelineError, OSError, ValueError) as e:
		fail('? ' + str(e))
	if os.geteuid() != 0:
		fail('? This must be run as root')

	## Stage 1: Run the phases.  The orchestrator releases the image however it exits.

	try:
		PhaseOrchestrator(config).run()
	except (PipelineError, OSError, ValueError) as e:
		# OSError and ValueError: host trouble such as a full disk, or a setting the image store rejects.
		fail('? ' + str(e))
	except KeyboardInterrupt:
		fail('? Interrupted')
