"""Web novel tracker.

This package implements a FastAPI service that follows a set of web
novels, notices when new chapters appear on their sites and writes AI
summaries (and optional illustrations) of them.

The modules in this package are:

* ``storage.py`` – JSON file persistence for books, summaries and the
  chapter history.

* ``registry.py`` – The set of tracked books and their chapter
  watermarks.

* ``extractor.py`` – Downloading table-of-contents and chapter pages
  and pulling chapter links and text out of them with ``bs4``.

* ``differ.py`` – Working out which discovered chapters are new.

* ``summarizer.py`` and ``illustrator.py`` – Adapters for Anthropic
  (summaries) and Together (images). Both are optional and are skipped
  when their API keys are missing.

* ``reconciler.py`` – The check/summarize pipeline run per book, with
  its single-run guard.

* ``scheduler.py`` – Background timers for the periodic check, the
  daily summary and the weekly cleanup.

* ``main.py`` – The FastAPI application.
"""
