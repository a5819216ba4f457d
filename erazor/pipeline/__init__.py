"""
Background-Removal Job Pipeline

Two job kinds on one Celery queue:
1. submit - hand the uploaded file to the processor, create the task
2. poll   - check processor status until ready, failed or out of attempts
"""
