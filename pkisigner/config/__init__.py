"""
Configuration of signers, the remote signing client and logging, typically
populated from a YAML file.
"""
