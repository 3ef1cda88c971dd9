"""
Agent Services

- metrics_collector.py - psutil-based system/process/temperature sampling
- health.py - Local HTTP health and stats endpoint
"""
