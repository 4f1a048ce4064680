# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""steprun - run numbered job steps with per-step resource tracking."""

__version__ = "0.3.0"
