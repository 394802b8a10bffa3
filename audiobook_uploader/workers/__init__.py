"""Worker processes for the audiobook pipeline.

pipeline_worker runs one pipeline per process and reports progress and the
terminal result over stdout as JSON Lines.
"""
