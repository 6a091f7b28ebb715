"""Event bus — Redis Streams, partitioned by target entity id.

Learn: Each logical topic (user-events, post-events, notification-events)
is split into N partition streams. The publisher appends to the stream
chosen from the envelope's targetId; the fan-out worker reads every
partition through a consumer group. Same targetId → same stream → ordered.
"""
