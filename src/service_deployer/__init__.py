"""service-deployer: provision and redeploy a compiled service onto a remote host."""

__version__ = "0.3.0"
