# Session = everything needed to continue a call at a given moment.

# It is "the NOW" for the call, including:

# Which workflow node the conversation is on

# Variables extracted from the caller so far

# The conversation history, including interrupted replies

# Lifecycle status (initializing, active, terminating, closed)

# Errors encountered along the way
