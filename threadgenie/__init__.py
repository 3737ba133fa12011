"""Thread Genie Patch Studio: photo to embroidered patch through generative edits."""
