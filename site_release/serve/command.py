"""Foreground launch of the static file server."""

from __future__ import annotations

import logging
import os
import shutil
from typing import List, NoReturn

from ..errors import PipelineError
from ..schemas.serving import ServingConfiguration

logger = logging.getLogger(__name__)


def server_argv(config: ServingConfiguration) -> List[str]:
    return config.argv()


def exec_server(config: ServingConfiguration) -> NoReturn:
    """Replace the current process with the file server.

    The server becomes the only foreground process, so its exit status and
    signal handling are exactly its own.
    """

    argv = server_argv(config)
    executable = shutil.which(argv[0])
    if executable is None:
        raise PipelineError(f"{argv[0]} is not installed or not on PATH", step="serve")
    logger.info("Starting %s", " ".join(argv))
    os.execv(executable, argv)
