# This module handles context for a call

# +---------------------+
# |     Knowledge       |   (Per agent, cached, external)
# |---------------------|
# | Probe embedding     |
# | Prefetched chunks   |
# +---------------------+

# +---------------------+
# |      Session        |   (Per call, in memory, workflow-focused)
# |---------------------|
# | Current node        |
# | Variables           |
# | History             |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |        System prompt         |   (Assembled for every turn)
# |------------------------------|
# | Base prompt                  |
# | Current step instruction     |
# | Known details                |
# | Relevant knowledge           |
# +------------------------------+
#         |
#         v
#   [streamed completion]
