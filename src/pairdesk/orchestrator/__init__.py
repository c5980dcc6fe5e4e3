"""Orchestration of per-project pair-programming workers.

A project owns one supervised worker process and a set of connectors. The
worker is only reachable through connectors, which carry typed commands out
and untyped events back in; everything here turns that into awaitable,
single-flight prompt execution with streaming UI updates.
"""
