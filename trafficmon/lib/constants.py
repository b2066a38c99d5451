DHCP_LEASE_FILE_PATH = "/tmp/dhcp.leases"
DHCP_HOSTNAME_PLACEHOLDER = "*"

# nftables objects owned by the monitor
NFT_TABLE_FAMILY = "inet"
NFT_TABLE_NAME = "traffic_monitor"
NFT_CHAIN_NAME = "forward"
NFT_RULE_TAG = "tm" # Namespace marker in rule comments, "tm:<ip>:<dir>"

# MQTT
MQTT_BROKER = "192.168.46.222"
MQTT_PORT = 1883
MQTT_KEEPALIVE_SECONDS = 60
MQTT_PUBLISH_TIMEOUT_SECONDS = 5.0
MQTT_BASE_TOPIC = "network/usage"
MQTT_DISCOVERY_PREFIX = "homeassistant"

# Seconds between the two counter snapshots of a publish cycle
BW_INTERVAL_SECONDS = 5

# Baselines must live on storage that is wiped together with the nft counters (tmpfs)
STATE_BACKEND = "file"
STATE_DIR_PATH = "/tmp/traffic_monitor"
REDIS_URL = "redis://localhost:6379/0"
REDIS_KEY_PREFIX = "tmon:baseline"

# Daemon mode
SYNC_INTERVAL_SECONDS = 60
PUBLISH_INTERVAL_SECONDS = 60
LEASE_CHANGE_DEBOUNCE_SECONDS = 1.0

LOG_LEVEL = "info"
LOG_FORMAT = "json"
