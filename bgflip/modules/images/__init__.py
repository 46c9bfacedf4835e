"""
Images Module

ProcessedImage job records, their API schemas, persistence and the job
service behind the images endpoints.
"""
