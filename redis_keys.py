REDIS_ROOM_KEY = "chat:room:{room_id}" # room id - room hash
REDIS_ROOM_MESSAGES_KEY = "chat:room:{room_id}:messages" # room id - sorted set of message ids scored by ts
REDIS_MESSAGE_KEY = "chat:message:{message_id}" # message id - message hash
REDIS_CONN_KEY = "chat:conn:{connection_id}" # connection id - connection record
REDIS_ROOM_CONNS_KEY = "chat:room:{room_id}:connections" # room id - set of connection IDs
REDIS_CHANGES_STREAM = "chat:changes:messages" # stream carrying message change records
REDIS_CHANGES_GROUP = "broadcast" # consumer group of the broadcast dispatchers

# **Example `chat:conn:{id}` hash fields**
# - `connection_id` = gateway id or uuid4
# - `room_id` = normalized room id
# - `user_id`, `username`
# - `transport` = `gateway` | `local`
# - `push_target` = gateway connection id or local push URL
# - `connected_at` = epoch millis
# - `expires_at` = epoch seconds (key also carries a matching TTL)

# **Change stream entries**
# - one field, `record` = JSON change record
# - acknowledged in the group only after the batch holding it was dispatched
