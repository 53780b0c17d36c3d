"""Workflow orchestration, failure recovery, and the retry loop.

Why phases instead of a single prompt?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Experts are external CLI agents that fail in ordinary ways: rate limits,
timeouts, bad credentials, truncated replies. Splitting a request into
intent, assessment, exploration and implementation lets each step pick the
cheapest suitable expert, and gives the failure engine a single seam where
errors are classified and turned into retry, switch or escalate decisions.
The retry loop is the alternative for open-ended work where only the expert
can tell when it is done.
"""
