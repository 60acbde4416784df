# Host backends: bridge/TAP networking and firewall drivers
