"""Deploy pipeline: checkout, build and install on the target host, and the operator-side driver."""
