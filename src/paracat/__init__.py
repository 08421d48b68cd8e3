"""paracat: run a command N times in parallel over one line-oriented stream.

Input read on stdin is split on newline boundaries and handed round-robin to
N copies of a command. Their outputs can be merged back into a single stream,
with no line ever split across two workers and no partial line from one worker
interleaved with another's output.

Example:
    Upper-case a large file with four workers::

        $ paracat 4 -- tr a-z A-Z < big.txt > BIG.txt

    Run the workers through a shell::

        $ paracat --shell 4 -- 'grep foo | cut -f2'
"""

from __future__ import annotations


__version__ = '0.3.0'
__all__ = ['__version__']
