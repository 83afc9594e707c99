from __future__ import annotations

import os
import pathlib


class Paths:
    @property
    def root(self) -> pathlib.Path:
        """Return the directory holding one `<true_name>-<environment>` directory per stack.

        Raises:
            RuntimeError: If FCI_ROOT is not set in the environment

        """
        if "FCI_ROOT" not in os.environ:
            msg = "FCI_ROOT environment variable not set."
            raise RuntimeError(msg)

        return pathlib.Path(os.environ["FCI_ROOT"])

    @property
    def snapshots(self) -> pathlib.Path:
        return self.root / "__snapshots__"
