REDIS_ROOM_KEY = "room:participants:{slug}" # room id - hash of connection id -> display name
REDIS_CONN_ROOMS_KEY = "conn:rooms:{connection_id}" # connection id - set of room ids it joined
REDIS_CONN_INSTANCE_KEY = "conn:instance:{connection_id}" # connection id - id of the instance holding its socket
REDIS_INSTANCE_ALIVE_KEY = "instance:alive:{instance_id}" # instance id - heartbeat, expires if the instance dies
REDIS_INSTANCE_CHANNEL = "instance:channel:{instance_id}" # instance id - pub/sub channel for sends to its sockets

# **Connected participants tracking**
# - On join: `HSET room:participants:{id} {connId} {name}` and `SADD conn:rooms:{connId} {id}`.
# - On leave: `HDEL` + `SREM`. Redis drops a hash or set once its last field is removed,
#   so an empty room disappears on its own.

# **Delivery across instances**
# - On connect: `SET conn:instance:{connId} {instanceId}`; deleted on disconnect.
# - Each instance refreshes `instance:alive:{instanceId}` with a TTL while it runs.
# - A send to a socket held elsewhere is published on `instance:channel:{instanceId}`
#   as JSON `{connId, event, data}`; the owning instance writes it to the socket.
# - A participant whose instance heartbeat has expired is treated as gone and is
#   removed from the room the next time someone joins it.
