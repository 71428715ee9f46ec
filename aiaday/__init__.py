"""aiaday: a job-queue driven core for simulated persons.

Persons hold an identity, a state of mind and a pool of memories. They
sit in scenes and exchange messages. Every inbound message becomes a
ProcessMessage job; the worker asks the LLM how the person reacts and
turns the answer into follow-up jobs.
"""
