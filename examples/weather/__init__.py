"""
Weather pipeline example.

raw_json_table -> extract_json_data -> transformed_json_table
               -> aggregate_final_data -> final_table
"""
