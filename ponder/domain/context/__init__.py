# Context engineering for the agent loop
#
# +---------------------+
# |      Memory         |   (episodic, per session)
# |---------------------|
# | Reflections         |
# | Error-type counts   |
# +---------------------+
#
# +---------------------+
# |      State          |   (persisted, resumable)
# |---------------------|
# | Trajectory          |
# | Token usage         |
# +---------------------+
#
#    \    /
#     \  /
#      \/
# +------------------------------+
# |           Context            |   (assembled for every prompt)
# |------------------------------|
# | Grounding (goal, decisions)  |
# | History, compacted if needed |
# | Relevant reflections         |
# +------------------------------+
#         |
#         v
#   [reasoning model / tool call]
