"""
piiwatch - scan function log output for sensitive data and alert on findings.

Packages:
- piiwatch.core: errors, logging, settings, secrets, models, events
- piiwatch.buffer: durable log buffer
- piiwatch.sink: batch delivery into encrypted storage objects
- piiwatch.classification: scheduled classification jobs and the local scanner
- piiwatch.routing: finding routing, alert rendering and webhook dispatch
"""

__version__ = "0.1.0"
