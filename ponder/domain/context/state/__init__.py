# State = everything required to resume, continue, or audit a session.

# The persisted record holds the trajectory, the context with reflection
# ids instead of reflection bodies, episodic memory with error counts as
# pairs, and token usage.

# A record left in the running state by a process that no longer owns it
# is terminated on load.
