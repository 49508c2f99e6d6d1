# Wire event names. Inbound names are what connections send,
# outbound names are what the server emits.

# --- Inbound: both channels ---
AUTHENTICATE = "authenticate"

# --- Inbound: driver channel ---
UPDATE_STATUS = "update-status"
LOCATION_UPDATE = "location-update"
GET_PENDING_REQUESTS = "get-pending-requests"
ACCEPT_REQUEST = "accept-request"
UPDATE_REQUEST_STATUS = "update-request-status"

# --- Inbound: client channel ---
SET_AMBULANCE = "setAmbulance"
EMERGENCY_REQUEST = "emergency-request"
CANCEL_REQUEST = "cancel-request"

# --- Outbound: replies ---
AUTHENTICATED = "authenticated"
STATUS_UPDATED = "status-updated"
PENDING_REQUESTS = "pending-requests"
ACCEPTED_PROGRESS = "accepted-progress"
ACCEPTED_PROGRESS_DISABLE = "accepted-progress-disable"
REQUEST_STATUS_UPDATED = "request-status-updated"
ACTIVE_AMBULANCES = "active-ambulances"
REQUEST_SUBMITTED = "request-submitted"
ACCEPT_ERROR = "accept-error"
REQUEST_ERROR = "request-error"

# --- Outbound: driver group ---
NEW_EMERGENCY_REQUEST = "new-emergency-request"
REQUEST_REMOVED = "request-removed"

# --- Outbound: client group ---
AMBULANCE_LOCATION = "ambulance-location"
AMBULANCE_STATUS = "ambulance-status"
REMOVE_AMBULANCE = "remove-ambulance"

# --- Outbound: request room ---
REQUEST_ACCEPTED = "request-accepted"
REQUEST_CANCELLED = "request-cancelled"
EMERGENCY_STATUS_UPDATE = "emergency-status-update"
ASSIGNED_AMBULANCE_LOCATION = "assigned-ambulance-location"
