"""Multi-agent swarm orchestration for spec-driven development.

This package drives a fixed set of specialised agents through the phases
of a development workflow:
- Research and task decomposition
- Specification generation and validation
- Parallel development and QA test-suite preparation
- Quality assurance with a single fix-and-retest attempt
- Integration, artifact publishing and notifications

Failed pipelines are retried from scratch with exponential backoff and
escalated to a human through an issue tracker and webhooks.
"""
