"""
Orchestration: planner adapter, closed capability set and the budget-bounded loop.
"""
