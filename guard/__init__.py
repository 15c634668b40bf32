"""guard/ -- Account access guard: login throttling, suspension and ban.

Layer rule: guard/ imports only stdlib, third-party libraries and core/.
The embedding web layer imports from guard/, not the other way around.
"""
