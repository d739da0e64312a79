"""Code that runs inside a worker unit process.

A unit serves calls one at a time over a ``multiprocessing`` pipe:

    startup:  READY, sent once the unit is listening
    request:  (call_id, module_path, view, context)   or None to stop
    reply:    (call_id, True, new_context)             on success
              (call_id, False, traceback_text)         when the transform raised

Every call arms a self-destruct timer. If the transform has not returned when
it fires, the process exits on the spot; the dispatcher sees the dead pipe and
replaces the unit. This is the backstop under the dispatcher's own, shorter
call-time budget.
"""

from __future__ import annotations

import os
import signal
import sys
import threading
import traceback
from pathlib import Path
from typing import Any

from pagesmith.domain.preprocessing.loader import factories, load_module, member, site_imports

SELF_DESTRUCT_TIMEOUT = 5.0
SELF_DESTRUCT_EXIT_CODE = 70
READY = "ready"


def run_preprocessor(module_path: str, view: str, context: Any) -> Any:
    """Load the site's preprocessors fresh and apply ``view``'s ``process``.

    Views without a definition or without ``process`` leave the context as is.
    A transform that mutates in place and returns ``None`` keeps the mutated
    context.
    """

    path = Path(module_path)
    # Site modules stay cached afterwards: the reply is pickled after this returns.
    with site_imports(path.resolve().parent):
        module = load_module(path)
        factory = factories(module).get(view)
        if factory is None:
            return context
        definition = factory() if callable(factory) else factory
        process = member(definition, "process")
        if not callable(process):
            return context
        result = process(context)
    return context if result is None else result


def _self_destruct(view: str) -> None:
    sys.stderr.write(f"pagesmith worker {os.getpid()}: preprocessor {view!r} hung, exiting\n")
    sys.stderr.flush()
    os._exit(SELF_DESTRUCT_EXIT_CODE)


def unit_main(conn, unit_timeout: float = SELF_DESTRUCT_TIMEOUT) -> None:
    """Process entry point of a worker unit."""

    # Ctrl-C goes to the whole process group; the parent decides when units stop.
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    conn.send(READY)

    while True:
        try:
            message = conn.recv()
        except (EOFError, OSError):
            break
        if message is None:
            break

        call_id, module_path, view, context = message
        timer = threading.Timer(unit_timeout, _self_destruct, args=(view,))
        timer.daemon = True
        timer.start()
        try:
            reply = (call_id, True, run_preprocessor(module_path, view, context))
        except Exception:
            reply = (call_id, False, traceback.format_exc())
        finally:
            timer.cancel()

        try:
            conn.send(reply)
        except (BrokenPipeError, EOFError, OSError):
            break
        except Exception as exc:
            # The transform returned something that cannot cross the pipe.
            conn.send((call_id, False, f"Preprocessor result is not serializable: {exc!r}"))

    conn.close()


__all__ = ["READY", "SELF_DESTRUCT_TIMEOUT", "run_preprocessor", "unit_main"]
