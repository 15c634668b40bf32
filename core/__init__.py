"""core/ -- Kernel: configuration shared by every other package.

Layer rule: core/ imports only stdlib + third-party libraries.
"""
