"""Configuration settings for the Pod Exposer."""

# Ownership label: pods carrying it are managed by this controller
OWNER_LABEL_KEY = "created-by"
OWNER_LABEL_VALUE = "client-go-example"

# Label used by services to select the pod they expose
NAME_LABEL_KEY = "name"

# Pod template
CONTAINER_NAME = "web"
CONTAINER_IMAGE = "nginx:1.12"
CONTAINER_PORT_NAME = "http"
CONTAINER_PORT = 80

# Requested node port for exposing services
DEFAULT_NODE_PORT = 30000

# Default label selector for listing pods
DEFAULT_LABEL_SELECTOR = "k8s-app=kube-dns"

# Default resource names used by the command line flow
DEFAULT_NAMESPACE_NAME = "my-new-namespace"
DEFAULT_POD_NAME = "my-new-pod"

# Watch settings
WATCH_TIMEOUT_SECONDS = 300
RESYNC_INTERVAL_SECONDS = 60
REQUEST_TIMEOUT_SECONDS = 10

# Reconnect settings
MAX_RECONNECT_ATTEMPTS = 5
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 30.0
