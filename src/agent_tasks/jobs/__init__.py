"""Unit-of-work descriptor construction."""

from agent_tasks.jobs.builder import JobBuilder, JobDescriptor

__all__ = ["JobBuilder", "JobDescriptor"]
