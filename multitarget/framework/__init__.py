"""Project-specific framework utilities.

Config parsing, unit construction, the run index, status reporting and reset
operations. The kernel they drive lives in `unitkit`.
"""
