"""Command line tools for inspecting capabilities, manifests and limit presets."""
