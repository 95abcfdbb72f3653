"""
Product Video Generator

Turns product photos into short marketing videos:
  Submit  — quota check → job row (queued) → Dispatch Queue
  Process — claim → Veo start → poll every 5s (60 attempts) → done | failed
"""
