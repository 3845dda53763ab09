"""Terminal front end for the imager (whiptail or text prompts)."""
